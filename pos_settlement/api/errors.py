from fastapi import HTTPException, status

from pos_settlement.services.errors import (
    GatewayRequestError,
    InvalidInput,
    InvalidStateTransition,
    OrderNotFound,
    PaymentError,
    SettlementPreconditionError,
)


def to_http_exception(exc: PaymentError) -> HTTPException:
    if isinstance(exc, OrderNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (SettlementPreconditionError, InvalidStateTransition)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, GatewayRequestError):
        detail = f"{exc} ({exc.code})" if exc.code else str(exc)
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
