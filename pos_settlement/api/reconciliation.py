from typing import Annotated

from fastapi import APIRouter, Depends

from pos_settlement.dependencies import get_reconciliation_engine
from pos_settlement.schemas.terminals import ReconciliationRunResponse
from pos_settlement.services.reconciliation import ReconciliationEngine

router = APIRouter()


@router.post(
    "/run",
    response_model=ReconciliationRunResponse,
    summary="Run one reconciliation cycle now",
)
def run_reconciliation(engine: Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)]):
    """Returns ``overlapped: true`` without doing anything if a cycle is already in progress."""
    return engine.run_once().to_dict()
