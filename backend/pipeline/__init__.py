# Pipeline - order orchestration core
# ===================================
# Admission, reconciliation and component wiring.

from .orchestrator import TopupOrchestrator

__all__ = ["TopupOrchestrator"]
