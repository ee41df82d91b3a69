# tasks/__init__.py
# Background and operator tasks (run as modules, e.g. python -m unpaid_collection.tasks.pending_sweep)
