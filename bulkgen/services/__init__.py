"""Business logic services for the batch orchestrator."""

from bulkgen.services.batch_state_machine import BatchStateMachine
from bulkgen.services.credit_ledger import CreditLedger
from bulkgen.services.orchestrator import BatchOrchestrator
from bulkgen.services.recovery import RecoveryController
from bulkgen.services.row_executor import RowExecutor
from bulkgen.services.stitch_coordinator import StitchCoordinator

__all__ = [
    "BatchOrchestrator",
    "BatchStateMachine",
    "CreditLedger",
    "RecoveryController",
    "RowExecutor",
    "StitchCoordinator",
]
