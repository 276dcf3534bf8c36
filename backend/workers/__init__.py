# Workers: separate processes that use DB as shared state.
# Run from backend/ with:
#   python -m workers.ingestion_worker
#   python -m workers.signal_worker
#   python -m workers.price_monitor_worker
#   python -m workers.notifier_worker
#   python -m workers.performance_worker
