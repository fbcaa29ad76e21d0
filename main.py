import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from database import SessionLocal
from dates import Clock
from errors import HistoryTooLarge, NotFound, StoreUnavailable, ValidationError
from installments import split_installments
from reconciler import BalanceReconciler
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BillPaymentIn,
    BillSummaryOut,
    CardPurchaseIn,
    CreditCardIn,
    CreditCardOut,
    InstallmentOut,
    InstallmentPreviewIn,
    ProcessDueOut,
    RecomputeOut,
    RecomputeReportOut,
    RecurringOut,
    SubscriptionIn,
    TransactionIn,
    TransactionOut,
    TransferIn,
    TransferOut,
)
from services import (
    AccountService,
    CreditCardService,
    RecurringService,
    TransactionService,
    TransferService,
    post_recurring_all,
)
from sweeper import DueTransactionSweeper

logger = logging.getLogger(__name__)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_reconciler(request: Request) -> BalanceReconciler:
    return request.app.state.reconciler


def _error_response(status_code: int):
    def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error(f"request_failed: path={request.url.path} error={exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(
    session_factory: Optional[sessionmaker] = None,
    *,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    reconciler = BalanceReconciler(session_factory, settings=settings, clock=clock)
    sweeper = DueTransactionSweeper(reconciler)
    scheduler_manager = SchedulerManager(
        sweeper, settings, recurring=partial(post_recurring_all, reconciler)
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            scheduler_manager.start()
        try:
            yield
        finally:
            scheduler_manager.stop()

    app = FastAPI(title="Ledger", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.reconciler = reconciler
    app.state.sweeper = sweeper
    app.state.scheduler = scheduler_manager

    app.add_exception_handler(NotFound, _error_response(404))
    app.add_exception_handler(ValidationError, _error_response(400))
    app.add_exception_handler(StoreUnavailable, _error_response(503))
    app.add_exception_handler(HistoryTooLarge, _error_response(503))

    @app.get("/api/accounts", response_model=list[AccountOut])
    def list_accounts(
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return AccountService(db, reconciler).list_all()

    @app.post("/api/accounts", response_model=AccountOut, status_code=201)
    def create_account(
        payload: AccountIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return AccountService(db, reconciler).create(payload)

    @app.get("/api/accounts/{account_id}", response_model=AccountOut)
    def get_account(
        account_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return AccountService(db, reconciler).get(account_id)

    @app.post("/api/accounts/{account_id}/recompute", response_model=RecomputeOut)
    def recompute_account(
        account_id: int, reconciler: BalanceReconciler = Depends(get_reconciler)
    ):
        balance = reconciler.recompute(account_id)
        return RecomputeOut(account_id=account_id, balance_cents=balance)

    @app.post("/api/users/{user_id}/recompute", response_model=RecomputeReportOut)
    def recompute_user(
        user_id: int, reconciler: BalanceReconciler = Depends(get_reconciler)
    ):
        report = reconciler.recompute_all(user_id)
        return RecomputeReportOut(
            user_id=report.user_id,
            succeeded=report.succeeded,
            failed=report.failed,
            balances=report.balances,
            failures=report.failures,
        )

    @app.post("/api/users/{user_id}/process-due", response_model=ProcessDueOut)
    def process_due(user_id: int, request: Request):
        updated = request.app.state.sweeper.process_due(user_id)
        return ProcessDueOut(user_id=user_id, accounts_updated=updated)

    @app.post("/api/users/{user_id}/process-recurring", response_model=RecurringOut)
    def process_recurring(
        user_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        posted = RecurringService(db, reconciler, user_id).post_due()
        return RecurringOut(user_id=user_id, posted=posted)

    @app.post("/api/transactions", response_model=TransactionOut, status_code=201)
    def create_transaction(
        payload: TransactionIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return TransactionService(db, reconciler).create(payload)

    @app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
    def get_transaction(
        transaction_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return TransactionService(db, reconciler).get(transaction_id)

    @app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
    def update_transaction(
        transaction_id: int,
        payload: TransactionIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return TransactionService(db, reconciler).update(transaction_id, payload)

    @app.delete("/api/transactions/{transaction_id}", status_code=204)
    def delete_transaction(
        transaction_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        TransactionService(db, reconciler).delete(transaction_id)
        return Response(status_code=204)

    @app.post("/api/transfers", response_model=TransferOut, status_code=201)
    def create_transfer(
        payload: TransferIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return TransferService(db, reconciler).create(payload)

    @app.post("/api/transfers/{transfer_id}/cancel", response_model=TransferOut)
    def cancel_transfer(
        transfer_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return TransferService(db, reconciler).cancel(transfer_id)

    @app.post("/api/credit-cards", response_model=CreditCardOut, status_code=201)
    def create_credit_card(
        payload: CreditCardIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return CreditCardService(db, reconciler).create(payload)

    @app.get("/api/credit-cards/{card_id}")
    def get_credit_card(
        card_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        cards = CreditCardService(db, reconciler)
        card = CreditCardOut.model_validate(cards.get(card_id))
        return {
            **card.model_dump(),
            "available_limit_cents": cards.available_limit(card_id),
        }

    @app.post(
        "/api/credit-cards/{card_id}/purchases",
        response_model=list[TransactionOut],
        status_code=201,
    )
    def record_purchase(
        card_id: int,
        payload: CardPurchaseIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return CreditCardService(db, reconciler).record_purchase(card_id, payload)

    @app.post(
        "/api/credit-cards/{card_id}/subscriptions",
        response_model=TransactionOut,
        status_code=201,
    )
    def create_subscription(
        card_id: int,
        payload: SubscriptionIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return CreditCardService(db, reconciler).create_subscription(card_id, payload)

    @app.get("/api/credit-cards/{card_id}/bills", response_model=list[BillSummaryOut])
    def list_bills(
        card_id: int,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return [
            BillSummaryOut(
                cycle_year=bill.cycle.year,
                cycle_month=bill.cycle.month,
                closing_date=bill.closing_date,
                due_date=bill.due_date,
                label=bill.label,
                total_cents=bill.total_cents,
                transaction_count=bill.transaction_count,
            )
            for bill in CreditCardService(db, reconciler).bills(card_id)
        ]

    @app.post(
        "/api/credit-cards/{card_id}/bills/pay",
        response_model=TransactionOut,
        status_code=201,
    )
    def pay_bill(
        card_id: int,
        payload: BillPaymentIn,
        db: Session = Depends(get_db),
        reconciler: BalanceReconciler = Depends(get_reconciler),
    ):
        return CreditCardService(db, reconciler).pay_bill(card_id, payload)

    @app.post("/api/installments/preview", response_model=list[InstallmentOut])
    def preview_installments(payload: InstallmentPreviewIn):
        plan = split_installments(
            payload.total_cents,
            payload.count,
            payload.purchase_date,
            payload.closing_day,
            due_day=payload.due_day,
        )
        return [
            InstallmentOut(
                number=item.number,
                count=item.count,
                label=item.label,
                amount_cents=item.amount_cents,
                date=item.date,
                cycle_year=item.cycle.year,
                cycle_month=item.cycle.month,
                due_date=item.due_date,
                bill_label=item.bill_label,
            )
            for item in plan
        ]

    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
