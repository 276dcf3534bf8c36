"""
Engine Configuration Validator

Validates engine-config updates before they are persisted. Every rule is
checked and all errors are reported together, so an operator fixing a bad
update sees the whole list at once instead of one error per attempt.
"""

import math
from dataclasses import dataclass, field
from typing import Any

from utils.logger import get_logger
from utils.validation import PAIR_REGEX

logger = get_logger("config_validator")


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checks_passed: int = 0
    checks_failed: int = 0
    checks_warned: int = 0


class ConfigValidator:
    """Validates engine-config values (full documents or partial updates)."""

    INT_RANGES = {
        "wallet_count": (1, 50),
        "time_window_min": (1, 60),
        "required_leverage_min": (1, 100),
        "poll_interval_sec": (30, 300),
        "price_poll_interval_sec": (5, 300),
    }
    PAIR_LIST_KEYS = ("monitored_pairs", "ignored_pairs")

    def validate_updates(self, updates: dict[str, Any]) -> ValidationResult:
        """Validate only the keys present in ``updates``."""
        result = ValidationResult(valid=True)

        for key, value in updates.items():
            if key in self.INT_RANGES:
                low, high = self.INT_RANGES[key]
                self._check_int_range(result, key, value, low, high)
            elif key == "min_trade_size":
                self._check_min_trade_size(result, value)
            elif key == "default_sl_percent":
                self._check_stop_loss(result, value)
            elif key == "tps_percent":
                self._check_targets(result, value)
            elif key in self.PAIR_LIST_KEYS:
                self._check_pairs(result, key, value)
            else:
                self._add_warning(result, f"Unknown config key ignored: {key}")

        monitored = updates.get("monitored_pairs")
        ignored = updates.get("ignored_pairs")
        if isinstance(monitored, list) and isinstance(ignored, list):
            overlap = sorted(set(monitored) & set(ignored))
            if overlap:
                self._add_warning(
                    result, f"Pairs both monitored and ignored (ignored wins): {', '.join(overlap)}"
                )

        result.valid = len(result.errors) == 0

        log_method = logger.info if result.valid else logger.warning
        log_method(
            "Engine config validation complete",
            valid=result.valid,
            passed=result.checks_passed,
            failed=result.checks_failed,
            warnings=result.checks_warned,
        )
        return result

    def validate_all(self, config) -> ValidationResult:
        """Validate a complete EngineConfig."""
        return self.validate_updates(config.model_dump())

    # --- Validation helpers ---

    @staticmethod
    def _is_int(value: Any) -> bool:
        return isinstance(value, int) and not isinstance(value, bool)

    @staticmethod
    def _is_number(value: Any) -> bool:
        return (
            isinstance(value, (int, float))
            and not isinstance(value, bool)
            and math.isfinite(value)
        )

    def _check_int_range(self, result: ValidationResult, name: str, value, min_val, max_val):
        if not self._is_int(value):
            self._add_error(result, f"{name} must be an integer (got: {value!r})")
        elif value < min_val or value > max_val:
            self._add_error(result, f"{name}={value} out of range [{min_val}, {max_val}]")
        else:
            result.checks_passed += 1

    def _check_min_trade_size(self, result: ValidationResult, value):
        if not self._is_number(value) or value < 0:
            self._add_error(result, f"min_trade_size must be a non-negative number (got: {value!r})")
        else:
            result.checks_passed += 1

    def _check_stop_loss(self, result: ValidationResult, value):
        if not self._is_number(value) or not (-50 < value < 0):
            self._add_error(
                result, f"default_sl_percent must be negative and greater than -50 (got: {value!r})"
            )
        else:
            result.checks_passed += 1

    def _check_targets(self, result: ValidationResult, value):
        if not isinstance(value, list) or not value:
            self._add_error(result, "tps_percent must be a non-empty list")
            return
        bad = [tp for tp in value if not self._is_number(tp) or not (0 < tp <= 100)]
        if bad:
            self._add_error(result, f"tps_percent values must be in (0, 100] (got: {bad!r})")
            return
        if any(later <= earlier for earlier, later in zip(value, value[1:])):
            self._add_error(result, "tps_percent must be strictly ascending")
            return
        result.checks_passed += 1

    def _check_pairs(self, result: ValidationResult, name: str, value):
        if not isinstance(value, list):
            self._add_error(result, f"{name} must be a list of pair symbols")
            return
        bad = [p for p in value if not isinstance(p, str) or not PAIR_REGEX.match(p)]
        if bad:
            self._add_error(result, f"{name} contains invalid pair symbols: {bad!r}")
        else:
            result.checks_passed += 1

    def _add_error(self, result: ValidationResult, message: str):
        result.errors.append(message)
        result.checks_failed += 1

    def _add_warning(self, result: ValidationResult, message: str):
        result.warnings.append(message)
        result.checks_warned += 1


config_validator = ConfigValidator()
