import logging
from datetime import date, datetime
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from backup import (
    build_backup_document,
    import_backup,
    parse_backup,
    read_backup_file,
    write_backup_file,
)
from config import Settings, get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import Base, create_db_engine, make_session_factory
from insights import InsightsService
from log_buffer import LogBuffer
from models import PeriodTransition, RecurringPlan, Transaction
from recurrence import FinancialSnapshot, is_exhausted, next_due_date
from remote_store import RemoteStore, build_remote_store
from scheduler import SyncScheduler
from schemas import (
    ApplyNowIn,
    PlanIn,
    ResolveIn,
    SyncConfigIn,
    TransactionIn,
    ViewDateIn,
)
from services import (
    AppStateService,
    CycleShiftRequired,
    DatasetService,
    PeriodTransitionService,
    PlanService,
    RecordNotFound,
    SnapshotService,
    TransactionService,
    TransitionNotFound,
    resolve_category_label,
    session_today,
)
from sync import SyncService

logger = logging.getLogger(__name__)

MAX_BACKUP_BYTES = 25 * 1024 * 1024


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


class AppContext:
    """Everything one running application owns, wired once at startup."""

    def __init__(
        self, settings: Settings, remote_store: Optional[RemoteStore] = None
    ) -> None:
        self.settings = settings
        self.engine = create_db_engine(settings.database_url)
        Base.metadata.create_all(self.engine)
        self.session_factory = make_session_factory(self.engine, settings.timezone)
        if remote_store is None:
            remote_store = build_remote_store(settings)
        self.remote_store = remote_store
        self.sync_service = SyncService(self.session_factory, remote_store)
        self.sync_scheduler = SyncScheduler(
            self.sync_service, settings.timezone, settings.sync_debounce_secs
        )
        self.log_buffer = LogBuffer(settings.log_buffer_size)
        self.insights = InsightsService(settings.gemini_api_key, settings.gemini_model)

    def start(self) -> None:
        self.log_buffer.attach()
        self.sync_scheduler.start()
        logger.info("GridFinance %s started", APP_VERSION)

    def stop(self) -> None:
        self.sync_scheduler.stop()
        self.log_buffer.detach()
        self.engine.dispose()


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_db(request: Request):
    db = get_context(request).session_factory()
    try:
        yield db
    finally:
        db.close()


def require_csrf(
    request: Request,
    x_csrf_token: Optional[str] = Header(default=None, alias=CSRF_HEADER),
) -> None:
    secret = get_context(request).settings.csrf_secret
    if not validate_csrf_token(secret, x_csrf_token or ""):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, CycleShiftRequired):
        return HTTPException(
            status_code=409,
            detail={
                "message": str(exc),
                "plan_id": exc.plan_id,
                "due_date": exc.due_date.isoformat(),
            },
        )
    if isinstance(exc, (RecordNotFound, TransitionNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "category": txn.category,
        "is_paid": txn.is_paid,
        "related_plan_id": txn.related_plan_id,
        "last_modified": txn.last_modified,
    }


def _plan_out(plan: RecurringPlan) -> dict:
    exhausted = is_exhausted(plan)
    return {
        "id": plan.id,
        "description": plan.description,
        "amount_cents": plan.amount_cents,
        "type": plan.type.value,
        "category": plan.category,
        "frequency": plan.frequency.value,
        "start_date": plan.start_date.isoformat(),
        "occurrences_generated": plan.occurrences_generated,
        "max_occurrences": plan.max_occurrences,
        "end_date": plan.end_date.isoformat() if plan.end_date else None,
        "next_due_date": None if exhausted else next_due_date(plan).isoformat(),
        "exhausted": exhausted,
        "last_modified": plan.last_modified,
    }


def _snapshot_out(snapshot: FinancialSnapshot, db: Session) -> dict:
    state_service = AppStateService(db)
    return {
        "current_balance_cents": snapshot.current_balance,
        "projected_balance_cents": snapshot.projected_balance,
        "upcoming_income_cents": snapshot.upcoming_income,
        "upcoming_expenses_cents": snapshot.upcoming_expenses,
        "period_start": snapshot.period_start.isoformat(),
        "period_end": snapshot.period_end.isoformat(),
        "view_date": state_service.view_date().isoformat(),
        "cycle_start_day": state_service.state().cycle_start_day,
    }


def _transition_out(transition: Optional[PeriodTransition], db: Session) -> dict:
    if transition is None:
        return {"pending": False, "target_date": None, "items": []}
    items = []
    for item in transition.items:
        plan = db.get(RecurringPlan, item.plan_id)
        items.append(
            {
                "plan_id": item.plan_id,
                "due_date": item.due_date.isoformat(),
                "description": plan.description if plan else None,
                "amount_cents": plan.amount_cents if plan else None,
                "type": plan.type.value if plan else None,
                "frequency": plan.frequency.value if plan else None,
            }
        )
    return {
        "pending": True,
        "target_date": transition.target_date.isoformat(),
        "items": items,
    }


router = APIRouter(prefix="/api")


@router.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@router.get("/csrf")
def csrf_token(ctx: AppContext = Depends(get_context)):
    return {"csrf_token": generate_csrf_token(ctx.settings.csrf_secret)}


@router.get("/snapshot")
def api_snapshot(on: Optional[date] = None, db: Session = Depends(get_db)):
    snapshot = SnapshotService(db).build(on)
    return _snapshot_out(snapshot, db)


@router.get("/transactions")
def api_transactions(limit: Optional[int] = None, db: Session = Depends(get_db)):
    if limit is not None:
        limit = min(max(limit, 1), 10000)
    items = TransactionService(db).list(limit=limit)
    return {"items": [_transaction_out(txn) for txn in items]}


@router.post("/transactions", status_code=201, dependencies=[Depends(require_csrf)])
def create_transaction(
    data: TransactionIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _transaction_out(txn)


@router.put("/transactions/{transaction_id}", dependencies=[Depends(require_csrf)])
def update_transaction(
    transaction_id: str,
    data: TransactionIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _transaction_out(txn)


@router.delete(
    "/transactions/{transaction_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_transaction(
    transaction_id: str,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return Response(status_code=204)


@router.get("/plans")
def api_plans(db: Session = Depends(get_db)):
    return {"items": [_plan_out(plan) for plan in PlanService(db).list()]}


@router.post("/plans", status_code=201, dependencies=[Depends(require_csrf)])
def create_plan(
    data: PlanIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        plan = PlanService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _plan_out(plan)


@router.put("/plans/{plan_id}", dependencies=[Depends(require_csrf)])
def update_plan(
    plan_id: str,
    data: PlanIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        plan = PlanService(db).update(plan_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _plan_out(plan)


@router.delete("/plans/{plan_id}", status_code=204, dependencies=[Depends(require_csrf)])
def delete_plan(
    plan_id: str,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        PlanService(db).delete(plan_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return Response(status_code=204)


@router.post(
    "/plans/{plan_id}/apply-now", status_code=201, dependencies=[Depends(require_csrf)]
)
def apply_plan_now(
    plan_id: str,
    data: Optional[ApplyNowIn] = None,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    shift_cycle = data.shift_cycle if data else None
    try:
        txn = PlanService(db).apply_now(plan_id, shift_cycle=shift_cycle)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _transaction_out(txn)


@router.post("/view-date", dependencies=[Depends(require_csrf)])
def change_view_date(
    data: ViewDateIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        transition = PeriodTransitionService(db).change_view_date(data.date)
    except ValueError as exc:
        raise _http_error(exc) from exc
    if transition is None:
        ctx.sync_scheduler.notify_change()
        return {
            "status": "applied",
            "snapshot": _snapshot_out(SnapshotService(db).build(), db),
        }
    return {"status": "pending", "transition": _transition_out(transition, db)}


@router.get("/transition")
def current_transition(db: Session = Depends(get_db)):
    return _transition_out(PeriodTransitionService(db).current(), db)


@router.post("/transition/items/{plan_id}", dependencies=[Depends(require_csrf)])
def resolve_transition_item(
    plan_id: str,
    data: ResolveIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    service = PeriodTransitionService(db)
    try:
        service.resolve(plan_id, data.action)
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _transition_out(service.current(), db)


@router.post("/transition/finish", dependencies=[Depends(require_csrf)])
def finish_transition(
    ctx: AppContext = Depends(get_context), db: Session = Depends(get_db)
):
    try:
        PeriodTransitionService(db).finish()
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return _snapshot_out(SnapshotService(db).build(), db)


@router.post("/transition/cancel", status_code=204, dependencies=[Depends(require_csrf)])
def cancel_transition(db: Session = Depends(get_db)):
    try:
        PeriodTransitionService(db).cancel()
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.get("/sync/status")
def sync_status(ctx: AppContext = Depends(get_context)):
    return ctx.sync_service.status_payload()


@router.put("/sync/config", dependencies=[Depends(require_csrf)])
def update_sync_config(
    data: SyncConfigIn,
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    try:
        cleared = AppStateService(db).update_sync_config(data.enabled, data.sync_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    if cleared:
        logger.info("sync_id_changed: local data cleared")
    if ctx.sync_service.is_enabled():
        ctx.sync_scheduler.trigger_now("config")
    payload = ctx.sync_service.status_payload()
    payload["cleared"] = cleared
    return payload


@router.post("/sync", dependencies=[Depends(require_csrf)])
def run_sync(ctx: AppContext = Depends(get_context)):
    ran = ctx.sync_service.sync_now("manual")
    payload = ctx.sync_service.status_payload()
    payload["ran"] = ran
    return payload


@router.post("/sync/foreground", status_code=202, dependencies=[Depends(require_csrf)])
def app_foregrounded(ctx: AppContext = Depends(get_context)):
    ctx.sync_scheduler.notify_foreground()
    return {"queued": ctx.sync_service.is_enabled()}


@router.get("/backup/export")
def export_backup(db: Session = Depends(get_db)):
    document = build_backup_document(db)
    filename = f"GridFinance_Export_{datetime.now().strftime('%Y-%m-%d')}.json"
    return JSONResponse(
        document.to_wire(),
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/backup/import", dependencies=[Depends(require_csrf)])
async def import_backup_upload(
    file: UploadFile = File(...),
    ctx: AppContext = Depends(get_context),
    db: Session = Depends(get_db),
):
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(content) > MAX_BACKUP_BYTES:
        raise HTTPException(status_code=400, detail="Backup file too large (max 25MB)")
    try:
        counts = import_backup(db, parse_backup(content, session_today(db)))
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return {"imported": counts}


@router.post("/backup/save", dependencies=[Depends(require_csrf)])
def save_backup(ctx: AppContext = Depends(get_context), db: Session = Depends(get_db)):
    path = write_backup_file(build_backup_document(db), ctx.settings.data_dir)
    return {"path": str(path)}


@router.post("/backup/load", dependencies=[Depends(require_csrf)])
def load_saved_backup(
    ctx: AppContext = Depends(get_context), db: Session = Depends(get_db)
):
    try:
        counts = import_backup(
            db, read_backup_file(ctx.settings.data_dir, session_today(db))
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    ctx.sync_scheduler.notify_change()
    return {"imported": counts}


@router.post("/data/clear", dependencies=[Depends(require_csrf)])
def clear_data(ctx: AppContext = Depends(get_context), db: Session = Depends(get_db)):
    service = DatasetService(db)
    service.clear()
    ctx.sync_scheduler.notify_change()
    return service.counts()


@router.get("/insights")
def insights(ctx: AppContext = Depends(get_context), db: Session = Depends(get_db)):
    text = ctx.insights.generate(
        TransactionService(db).list(),
        PlanService(db).list(),
        SnapshotService(db).build(),
    )
    return {"insights": text}


@router.get("/logs")
def logs(ctx: AppContext = Depends(get_context)):
    return {"items": ctx.log_buffer.entries()}


@router.delete("/logs", status_code=204, dependencies=[Depends(require_csrf)])
def clear_logs(ctx: AppContext = Depends(get_context)):
    ctx.log_buffer.clear()
    return Response(status_code=204)


@router.get("/categories/suggest")
def suggest_category(label: str = "", db: Session = Depends(get_db)):
    return {"label": resolve_category_label(db, label)}


def create_app(
    settings: Optional[Settings] = None, remote_store: Optional[RemoteStore] = None
) -> FastAPI:
    context = AppContext(settings or get_settings(), remote_store)
    app = FastAPI(title="GridFinance", version=APP_VERSION)
    app.state.context = context
    app.include_router(router)

    @app.on_event("startup")
    def startup_event():
        context.start()

    @app.on_event("shutdown")
    def shutdown_event():
        context.stop()

    return app
