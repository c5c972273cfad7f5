import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .actions import EARN_FAILED, REDEEM_FAILED, PointsEconomy, error_message, get_economy
from .errors import (
    AccountNotFoundError,
    ConflictRetriesExhaustedError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidRewardError,
    InvalidVoucherTransitionError,
    PointsError,
    ValidationError,
    VoucherNotFoundError,
)
from .models import (
    AccountAudit,
    AccountBalance,
    EarnRequest,
    EarnResult,
    LedgerHistoryResponse,
    RedeemRequest,
    RedeemResult,
    RewardDefinition,
    Voucher,
    VoucherStatus,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Commute Points API",
    description="Points economy for commute rewards: earning, redemption, vouchers and an append-only ledger",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def status_for(error: PointsError) -> int:
    if isinstance(error, (ValidationError, InvalidRewardError, InsufficientBalanceError, InvalidVoucherTransitionError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, (AccountNotFoundError, VoucherNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (IdempotencyConflictError, ConflictRetriesExhaustedError)):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "commute-points"}


@app.get("/rewards", response_model=list[RewardDefinition], tags=["Rewards"])
def list_rewards(economy: PointsEconomy = Depends(get_economy)) -> list[RewardDefinition]:
    return economy.catalog.list_rewards()


@app.post("/accounts/{account_id}/earn", response_model=EarnResult, response_model_exclude_none=True, tags=["Points"])
def earn_points(account_id: str, request: EarnRequest, economy: PointsEconomy = Depends(get_economy)):
    try:
        response = economy.earn_service.earn(account_id, request.amount, request.reason, request.idempotency_key)
    except PointsError as e:
        result = EarnResult(success=False, error=error_message(e, EARN_FAILED))
        return JSONResponse(status_code=status_for(e), content=result.model_dump(by_alias=True, exclude_none=True))
    result = EarnResult(success=True, new_points=response.new_balance)
    return JSONResponse(content=result.model_dump(by_alias=True, exclude_none=True))


@app.post("/accounts/{account_id}/redeem", response_model=RedeemResult, response_model_exclude_none=True, tags=["Points"])
def redeem_reward(account_id: str, request: RedeemRequest, economy: PointsEconomy = Depends(get_economy)):
    try:
        response = economy.redemption_service.redeem(
            account_id, request.reward_title, request.points_cost, request.idempotency_key
        )
    except PointsError as e:
        result = RedeemResult(success=False, error=error_message(e, REDEEM_FAILED))
        return JSONResponse(status_code=status_for(e), content=result.model_dump(by_alias=True, exclude_none=True))
    result = RedeemResult(success=True, new_points=response.new_balance, voucher_id=str(response.voucher.id))
    return JSONResponse(content=result.model_dump(by_alias=True, exclude_none=True))


@app.get("/accounts/{account_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_balance(account_id: str, economy: PointsEconomy = Depends(get_economy)) -> AccountBalance:
    try:
        return economy.balance(account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account {account_id} not found")


@app.get("/accounts/{account_id}/ledger", response_model=LedgerHistoryResponse, tags=["Accounts"])
def get_ledger(
    account_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    economy: PointsEconomy = Depends(get_economy),
) -> LedgerHistoryResponse:
    try:
        return economy.recorder.history(account_id, limit, offset)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account {account_id} not found")


@app.get("/accounts/{account_id}/audit", response_model=AccountAudit, tags=["Accounts"])
def audit_account(account_id: str, economy: PointsEconomy = Depends(get_economy)) -> AccountAudit:
    try:
        return economy.recorder.verify(account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Account {account_id} not found")


@app.get("/accounts/{account_id}/vouchers", response_model=list[Voucher], tags=["Vouchers"])
def list_vouchers(
    account_id: str,
    voucher_status: Optional[VoucherStatus] = Query(default=None, alias="status"),
    economy: PointsEconomy = Depends(get_economy),
) -> list[Voucher]:
    return economy.issuer.for_account(account_id, voucher_status)


@app.post("/vouchers/{voucher_id}/use", response_model=Voucher, tags=["Vouchers"])
def use_voucher(voucher_id: UUID, economy: PointsEconomy = Depends(get_economy)) -> Voucher:
    try:
        return economy.issuer.mark_used(voucher_id)
    except VoucherNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Voucher {voucher_id} not found")
    except InvalidVoucherTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/vouchers/{voucher_id}/expire", response_model=Voucher, tags=["Vouchers"])
def expire_voucher(voucher_id: UUID, economy: PointsEconomy = Depends(get_economy)) -> Voucher:
    try:
        return economy.issuer.expire(voucher_id)
    except VoucherNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Voucher {voucher_id} not found")
    except InvalidVoucherTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


if __name__ == "__main__":
    import uvicorn

    from .config import PointsSettings, configure_logging

    configure_logging(PointsSettings.from_env())
    uvicorn.run(app, host="0.0.0.0", port=8000)
