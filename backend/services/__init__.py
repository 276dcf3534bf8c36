from importlib import import_module

__all__ = [
    "ConsensusDetector",
    "PositionIngestor",
    "PriceMonitor",
    "TelegramNotifier",
    "EngineRuntime",
    "get_runtime",
]

_LAZY_EXPORTS = {
    "ConsensusDetector": ("services.consensus_detector", "ConsensusDetector"),
    "PositionIngestor": ("services.position_ingestor", "PositionIngestor"),
    "PriceMonitor": ("services.price_monitor", "PriceMonitor"),
    "TelegramNotifier": ("services.notifier", "TelegramNotifier"),
    "EngineRuntime": ("services.runtime", "EngineRuntime"),
    "get_runtime": ("services.runtime", "get_runtime"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
