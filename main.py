import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Type, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from ai import FinancialAI
from auth import SESSION_COOKIE, read_session_token, token_from_headers
from cache import Cache, create_cache
from config import get_settings
from database import Database
from periods import month_key, parse_month, parse_year
from schemas import BudgetIn, ChatQuestionIn, ExpenseIn, ReportExportIn
from services import (
    AnalyticsService,
    BudgetService,
    ConflictError,
    DashboardService,
    ExpenseService,
    InsightsService,
    NotFoundError,
    ReportsService,
    UserService,
    expense_to_dict,
    invalidate_user_caches,
)

if TYPE_CHECKING:  # pragma: no cover
    from weasyprint import HTML, CSS  # noqa: F401
    from weasyprint.text.fonts import FontConfiguration  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger(__name__)

app = FastAPI(title="FinanSync")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

ModelT = TypeVar("ModelT", bound=BaseModel)


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open(BASE_DIR / "pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def format_currency(amount: float) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


templates.env.filters["currency"] = format_currency


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    app.state.database = Database(settings.database_url)
    app.state.cache = create_cache(settings)
    app.state.ai = FinancialAI(settings)
    logger.info(f"app_started: version={APP_VERSION}")


@app.on_event("shutdown")
def shutdown_event():
    cache = getattr(app.state, "cache", None)
    if cache is not None:
        cache.close()
    database = getattr(app.state, "database", None)
    if database is not None:
        database.dispose()
    logger.info("app_stopped")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"unhandled_error: path={request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def get_db(request: Request):
    database: Database = request.app.state.database
    db = database.session()
    try:
        yield db
    finally:
        db.close()


def get_cache(request: Request) -> Cache:
    return request.app.state.cache


def get_ai(request: Request) -> FinancialAI:
    return request.app.state.ai


def current_user_id(request: Request, db: Session = Depends(get_db)) -> str:
    token = token_from_headers(
        request.headers.get("Authorization"), request.cookies.get(SESSION_COOKIE)
    )
    claims = read_session_token(token) if token else None
    if not claims:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = str(claims["u"])
    UserService(db).ensure(user_id, claims.get("email"), claims.get("name"))
    return user_id


def _validation_message(exc: ValidationError) -> str:
    messages = []
    for error in exc.errors(include_url=False):
        field = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{field}: {error.get('msg')}" if field else error.get("msg"))
    return "; ".join(messages) or "Invalid input data"


def json_body(
    model: Type[ModelT], error_detail: Optional[str] = None
) -> Callable[[Request], Awaitable[ModelT]]:
    """Dependency that reads and validates the request body as ``model``.

    Only the body read is async; routes stay plain functions so their
    database, AI and PDF work runs in the threadpool.
    """

    async def parse_body(request: Request) -> ModelT:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(
                status_code=400, detail=error_detail or "Invalid JSON body"
            ) from exc
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400, detail=error_detail or _validation_message(exc)
            ) from exc

    return parse_body


@app.get("/api/budgets")
def list_budgets(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return BudgetService(db, user_id).list_with_stats()


@app.post("/api/budgets", status_code=201)
def create_budget(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
    data: BudgetIn = Depends(json_body(BudgetIn)),
):
    try:
        budget = BudgetService(db, user_id).create(data)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    invalidate_user_caches(db, cache, user_id)
    return budget


@app.get("/api/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return BudgetService(db, user_id).get_with_stats(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
    data: BudgetIn = Depends(json_body(BudgetIn)),
):
    try:
        budget = BudgetService(db, user_id).update(budget_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    invalidate_user_caches(db, cache, user_id)
    return budget


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    invalidate_user_caches(db, cache, user_id)
    return {"message": "Budget deleted successfully"}


@app.get("/api/expenses")
def list_expenses(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return [expense_to_dict(e) for e in ExpenseService(db, user_id).list()]


@app.post("/api/expenses", status_code=201)
def create_expense(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
    data: ExpenseIn = Depends(json_body(ExpenseIn)),
):
    try:
        expense = ExpenseService(db, user_id).create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    invalidate_user_caches(db, cache, user_id)
    return expense


@app.get("/api/expenses/{expense_id}")
def get_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        return ExpenseService(db, user_id).get(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/expenses/{expense_id}")
def update_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
    data: ExpenseIn = Depends(json_body(ExpenseIn)),
):
    try:
        expense = ExpenseService(db, user_id).update(expense_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    invalidate_user_caches(db, cache, user_id)
    return expense


@app.delete("/api/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
):
    try:
        ExpenseService(db, user_id).delete(expense_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    invalidate_user_caches(db, cache, user_id)
    return {"message": "Expense deleted successfully"}


@app.get("/api/dashboard")
def dashboard(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
):
    return DashboardService(db, cache, user_id).snapshot()


@app.get("/api/analytics")
def analytics(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    try:
        months = int(request.query_params.get("months", "12"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="months must be an integer") from exc
    months = min(max(months, 1), 120)
    return AnalyticsService(db, user_id).overview(months)


@app.get("/api/reports/monthly")
def monthly_report(
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
):
    try:
        report_date = parse_month(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReportsService(db, cache, user_id).generate_monthly_report(report_date)


@app.get("/api/reports/yearly")
def yearly_report(
    year: Optional[str] = None,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
):
    try:
        report_year = parse_year(year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReportsService(db, cache, user_id).generate_yearly_report(report_year)


def render_pdf(html: str, base_url: str) -> bytes:
    try:
        from weasyprint import CSS, HTML
        from weasyprint.text.fonts import FontConfiguration
    except Exception as exc:
        raise HTTPException(
            status_code=500,
            detail="PDF export requires WeasyPrint system dependencies; install them for your OS and retry.",
        ) from exc

    font_config = FontConfiguration()
    css = CSS(
        string="""
            @page {
                size: A4;
                margin: 20mm;
                @bottom-center {
                    content: "Page " counter(page) " of " counter(pages);
                    color: #64748b;
                    font-size: 9pt;
                }
            }
        """,
        font_config=font_config,
    )
    return HTML(string=html, base_url=base_url).write_pdf(
        stylesheets=[css], font_config=font_config
    )


@app.post("/api/reports/export-pdf")
def export_report_pdf(
    request: Request,
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    user_id: str = Depends(current_user_id),
    options: ReportExportIn = Depends(json_body(ReportExportIn)),
):
    try:
        reports = ReportsService(db, cache, user_id)
        if options.report_type == "monthly":
            report_date = parse_month(options.month)
            report = reports.generate_monthly_report(report_date)
            period_slug = month_key(report_date)
        else:
            report_year = options.year or parse_year(None)
            report = reports.generate_yearly_report(report_year)
            period_slug = str(report_year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        start_time = datetime.now()
        html = templates.env.get_template("report.html").render(
            report_type=options.report_type,
            report=report,
            generated_at=datetime.now(),
            app_version=APP_VERSION,
        )
        pdf_bytes = render_pdf(html, str(request.base_url))
        pdf_duration = (datetime.now() - start_time).total_seconds()
        logger.info(
            f"report_exported: user={user_id} type={options.report_type} "
            f"period={period_slug} pdf_size_bytes={len(pdf_bytes)} "
            f"pdf_duration={pdf_duration:.2f}s"
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error generating PDF report")
        raise HTTPException(status_code=500, detail="Failed to generate PDF") from exc

    filename = f"finansync-report-{options.report_type}-{period_slug}.pdf"
    return StreamingResponse(
        iter([pdf_bytes]),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(len(pdf_bytes)),
        },
    )


@app.get("/api/ai/insights")
def ai_insights(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    ai: FinancialAI = Depends(get_ai),
    user_id: str = Depends(current_user_id),
):
    insights = InsightsService(db, cache, ai, user_id).spending_insights()
    return {"insights": insights}


@app.post("/api/ai/chat")
def ai_chat(
    db: Session = Depends(get_db),
    cache: Cache = Depends(get_cache),
    ai: FinancialAI = Depends(get_ai),
    user_id: str = Depends(current_user_id),
    data: ChatQuestionIn = Depends(
        json_body(ChatQuestionIn, error_detail="Question is required")
    ),
):
    answer = InsightsService(db, cache, ai, user_id).answer(data.question)
    return {"answer": answer}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
