# tasks/__init__.py
from tasks.maintenance import maintenance_loop, run_maintenance_cycle

__all__ = ["maintenance_loop", "run_maintenance_cycle"]
