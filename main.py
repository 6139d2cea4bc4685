import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    RedirectResponse,
    Response,
)
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy.orm import Session

from budget_math import parse_amount
from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import get_db, init_db
from identity import (
    SESSION_COOKIE,
    AuthSession,
    IdentityError,
    IdentityProvider,
    decode_session,
    encode_session,
    get_identity_provider,
)
from models import CURRENCY_NAMES, CURRENCY_SYMBOLS, CurrencyCode
from periods import current_month, resolve_month
from schemas import (
    CategoryIn,
    CategoryReorderIn,
    CategoryUpdateIn,
    CurrencyIn,
    IncomeIn,
    OnboardingIn,
    PasswordResetIn,
    PasswordUpdateIn,
    SavingsRateIn,
    SignInIn,
    SignUpIn,
)
from services import (
    AllocationService,
    BudgetMonthService,
    CategoryService,
    ConflictError,
    InsightsService,
    NotFoundError,
    StorageError,
    UserService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Planner")
app.mount("/static", StaticFiles(directory="static"), name="static")
templates = Jinja2Templates(directory="templates")


def format_money(value: Optional[Decimal], currency: Optional[str] = None) -> str:
    amount = Decimal(value or 0)
    text = f"{abs(amount):,.2f}"
    symbol = ""
    if currency:
        try:
            symbol = CURRENCY_SYMBOLS[CurrencyCode(currency)]
        except ValueError:
            symbol = currency
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol} {text}".strip() if symbol else f"{sign}{text}"


def format_percent(rate: Optional[Decimal]) -> str:
    return f"{Decimal(rate or 0) * 100:.0f}%"


templates.env.filters["money"] = format_money
templates.env.filters["percent"] = format_percent
templates.env.globals["CURRENCY_NAMES"] = CURRENCY_NAMES


def static_path(path: str) -> str:
    return app.url_path_for("static", path=path)


templates.env.globals["static_path"] = static_path


class AuthenticationRequired(Exception):
    pass


def current_session(request: Request) -> AuthSession:
    session = decode_session(request.cookies.get(SESSION_COOKIE))
    if session is None:
        raise AuthenticationRequired()
    return session


@app.exception_handler(AuthenticationRequired)
def authentication_required_handler(request: Request, _exc: AuthenticationRequired):
    if request.url.path.startswith("/api/"):
        return JSONResponse({"detail": "Not authenticated"}, status_code=401)
    return RedirectResponse(url="/login", status_code=303)


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Budget planner started (timezone=%s)", get_settings().timezone)


def error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        errors = exc.errors()
        if errors:
            message = str(errors[0].get("msg", ""))
            return message.removeprefix("Value error, ")
    return str(exc)


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=400, detail=error_message(exc))


def render(
    request: Request,
    template: str,
    context: dict[str, object],
    *,
    auth: Optional[AuthSession] = None,
    status_code: int = 200,
) -> HTMLResponse:
    ctx = {
        "request": request,
        "auth": auth,
        "csrf_token": generate_csrf_token(auth.identity.id if auth else ""),
    }
    ctx.update(context)
    return templates.TemplateResponse(request, template, ctx, status_code=status_code)


async def checked_form(request: Request, auth: Optional[AuthSession] = None):
    form = await request.form()
    user_id = auth.identity.id if auth else ""
    if not validate_csrf_token(str(form.get("csrf_token", "")), user_id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    return form


def done(request: Request, event: str, back: str = "/") -> Response:
    headers = {"HX-Trigger": event}
    if request.headers.get("HX-Request"):
        return Response(status_code=204, headers=headers)
    return RedirectResponse(url=back, status_code=303, headers=headers)


def back_to(request: Request, fallback: str = "/") -> str:
    referer = request.headers.get("referer") or ""
    base = str(request.base_url)
    if referer.startswith(base):
        return "/" + referer[len(base):]
    return fallback


def set_session_cookie(response: Response, session: AuthSession) -> Response:
    response.set_cookie(
        SESSION_COOKIE,
        encode_session(session),
        max_age=get_settings().session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )
    return response


def login_response(session: AuthSession, url: str = "/") -> Response:
    return set_session_cookie(RedirectResponse(url=url, status_code=303), session)


# Authentication


@app.get("/login", response_class=HTMLResponse)
def login_page(request: Request):
    return render(request, "login.html", {})


@app.post("/login")
async def login(
    request: Request,
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    form = await checked_form(request)
    try:
        data = SignInIn(email=form.get("email"), password=form.get("password") or "")
        session = provider.sign_in(data.email, data.password)
        UserService(db, session.identity.id).ensure_user(session.identity.email)
    except (ValidationError, IdentityError, ConflictError, StorageError) as exc:
        return render(
            request,
            "login.html",
            {"error": error_message(exc)},
            status_code=http_error(exc).status_code,
        )
    return login_response(session)


@app.get("/signup", response_class=HTMLResponse)
def signup_page(request: Request):
    return render(request, "signup.html", {})


@app.post("/signup")
async def signup(
    request: Request,
    db: Session = Depends(get_db),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    form = await checked_form(request)
    try:
        data = SignUpIn(
            email=form.get("email"),
            password=form.get("password") or "",
            confirm_password=form.get("confirm_password") or "",
        )
        identity = provider.sign_up(data.email, data.password)
        UserService(db, identity.id).ensure_user(identity.email)
        session = provider.sign_in(data.email, data.password)
    except (ValidationError, IdentityError, ConflictError, StorageError) as exc:
        return render(
            request,
            "signup.html",
            {"error": error_message(exc)},
            status_code=http_error(exc).status_code,
        )
    return login_response(session)


@app.post("/logout")
async def logout(
    request: Request,
    auth: AuthSession = Depends(current_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    await checked_form(request, auth)
    try:
        provider.sign_out(auth.access_token)
    except IdentityError:
        logger.warning("sign_out failed at identity provider; clearing local session")
    response = RedirectResponse(url="/login", status_code=303)
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.get("/forgot-password", response_class=HTMLResponse)
def forgot_password_page(request: Request):
    return render(request, "forgot_password.html", {})


@app.post("/forgot-password", response_class=HTMLResponse)
async def forgot_password(
    request: Request, provider: IdentityProvider = Depends(get_identity_provider)
):
    form = await checked_form(request)
    try:
        data = PasswordResetIn(email=form.get("email"))
        provider.request_password_reset(data.email)
    except (ValidationError, IdentityError) as exc:
        return render(
            request,
            "forgot_password.html",
            {"error": error_message(exc)},
            status_code=400,
        )
    return render(request, "forgot_password.html", {"sent": True})


@app.get("/reset-password", response_class=HTMLResponse)
def reset_password_page(
    request: Request,
    token_hash: Optional[str] = None,
    link_type: Optional[str] = Query(None, alias="type"),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    """Landing page for emailed reset links.

    A recovery link signs the visitor in and asks for a new password. Without
    one, a signed-in user gets the new-password form and anyone else the
    reset request form.
    """
    if token_hash and link_type == "recovery":
        try:
            session = provider.verify_recovery(token_hash)
        except IdentityError as exc:
            return render(
                request,
                "forgot_password.html",
                {"error": error_message(exc)},
                status_code=400,
            )
        response = render(request, "reset_password.html", {}, auth=session)
        return set_session_cookie(response, session)

    auth = decode_session(request.cookies.get(SESSION_COOKIE))
    if auth is None:
        return render(request, "forgot_password.html", {})
    return render(request, "reset_password.html", {}, auth=auth)


@app.post("/reset-password")
async def reset_password(
    request: Request,
    auth: AuthSession = Depends(current_session),
    provider: IdentityProvider = Depends(get_identity_provider),
):
    form = await checked_form(request, auth)
    try:
        data = PasswordUpdateIn(
            password=form.get("password") or "",
            confirm_password=form.get("confirm_password") or "",
        )
        provider.update_password(auth.access_token, data.password)
    except (ValidationError, IdentityError) as exc:
        raise HTTPException(status_code=400, detail=error_message(exc)) from exc
    return done(request, "password-updated", back="/settings")


# Budget pages


def month_context(db: Session, auth: AuthSession, budget_month) -> dict[str, object]:
    user = UserService(db, auth.identity.id).get()
    overview = BudgetMonthService(db, auth.identity.id).overview(budget_month)
    return {
        **overview,
        "currency": user.currency.value if user else get_settings().default_currency,
    }


@app.get("/", response_class=HTMLResponse)
def dashboard(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    users = UserService(db, auth.identity.id)
    if users.needs_onboarding():
        return render(
            request, "onboarding.html", {"currencies": list(CurrencyCode)}, auth=auth
        )
    budget_month = BudgetMonthService(db, auth.identity.id).get_or_create_current()
    ctx = month_context(db, auth, budget_month)
    ctx.update({"is_current": True, "month_ref": current_month()})
    return render(request, "month.html", ctx, auth=auth)


@app.post("/onboarding")
async def complete_onboarding(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        data = OnboardingIn(
            income=parse_amount(form.get("income")),
            currency=form.get("currency"),
        )
        UserService(db, auth.identity.id).complete_onboarding(data, auth.identity.email)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "onboarding-complete")


@app.get("/budget/{year}/{month}", response_class=HTMLResponse)
def historical_month(
    year: int,
    month: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    try:
        ref = resolve_month(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Not found") from exc
    if ref == current_month():
        return RedirectResponse(url="/", status_code=303)
    budget_month = BudgetMonthService(db, auth.identity.id).get(ref.year, ref.month)
    ctx: dict[str, object] = {"is_current": False, "month_ref": ref}
    if budget_month is None:
        ctx["budget_month"] = None
    else:
        ctx.update(month_context(db, auth, budget_month))
    return render(request, "month.html", ctx, auth=auth)


@app.post("/months/{month_id}/income")
async def update_income(
    month_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        data = IncomeIn(amount=parse_amount(form.get("amount")))
        BudgetMonthService(db, auth.identity.id).update_income(month_id, data)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "budget-changed", back=back_to(request))


@app.post("/months/{month_id}/savings-rate")
async def update_savings_rate(
    month_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        data = SavingsRateIn(
            rate=parse_amount(form.get("rate")), reason=form.get("reason") or None
        )
        BudgetMonthService(db, auth.identity.id).update_savings_rate(month_id, data)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "budget-changed", back=back_to(request))


@app.post("/months/{month_id}/allocations")
async def set_allocation(
    month_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        category_id = int(form.get("category_id") or 0)
        amount = parse_amount(form.get("amount"))
        AllocationService(db, auth.identity.id).set_amount(
            month_id, category_id, amount
        )
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "budget-changed", back=back_to(request))


@app.post("/allocations/{allocation_id}/delete")
async def delete_allocation(
    allocation_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    await checked_form(request, auth)
    try:
        AllocationService(db, auth.identity.id).delete(allocation_id)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "budget-changed", back=back_to(request))


@app.post("/months/{month_id}/copy-previous")
async def copy_previous_month(
    month_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    await checked_form(request, auth)
    try:
        AllocationService(db, auth.identity.id).copy_from_previous_month(month_id)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "budget-changed", back=back_to(request))


@app.post("/months/{month_id}/copy-from")
async def copy_from_month(
    month_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        source_id = int(form.get("source_month_id") or 0)
        AllocationService(db, auth.identity.id).copy_between(month_id, source_id)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "budget-changed", back=back_to(request))


# Categories and settings


@app.get("/settings", response_class=HTMLResponse)
def settings_page(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    user = UserService(db, auth.identity.id).get()
    if user is None:
        return RedirectResponse(url="/", status_code=303)
    categories = CategoryService(db, auth.identity.id).list_all()
    ref = current_month()
    return render(
        request,
        "settings.html",
        {
            "user": user,
            "categories": categories,
            "currencies": list(CurrencyCode),
            "month_ref": ref,
        },
        auth=auth,
    )


@app.post("/settings/currency")
async def update_currency(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        data = CurrencyIn(currency=form.get("currency"))
        UserService(db, auth.identity.id).update_currency(data.currency)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "settings-updated", back="/settings")


@app.post("/categories")
async def create_category(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        data = CategoryIn(
            name=form.get("name") or "",
            color=form.get("color") or "#6366f1",
        )
        CategoryService(db, auth.identity.id).create(data)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "categories-updated", back=back_to(request, "/settings"))


@app.post("/categories/reorder")
async def reorder_categories(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        ids = [int(v) for v in form.getlist("category_ids")]
        data = CategoryReorderIn(category_ids=ids)
        CategoryService(db, auth.identity.id).reorder(data)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "categories-updated", back=back_to(request, "/settings"))


@app.post("/categories/{category_id}")
async def update_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    form = await checked_form(request, auth)
    try:
        data = CategoryUpdateIn(
            name=form.get("name") or None,
            color=form.get("color") or None,
        )
        CategoryService(db, auth.identity.id).update(category_id, data)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "categories-updated", back=back_to(request, "/settings"))


@app.post("/categories/{category_id}/delete")
async def delete_category(
    category_id: int,
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    await checked_form(request, auth)
    try:
        CategoryService(db, auth.identity.id).delete(category_id)
    except (ValueError, StorageError) as exc:
        raise http_error(exc) from exc
    return done(request, "categories-updated", back=back_to(request, "/settings"))


@app.get("/insights", response_class=HTMLResponse)
def insights_page(
    request: Request,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    user = UserService(db, auth.identity.id).get()
    if user is None:
        return RedirectResponse(url="/", status_code=303)
    insights = InsightsService(db, auth.identity.id).summary()
    return render(
        request,
        "insights.html",
        {"insights": insights, "currency": user.currency.value},
        auth=auth,
    )


# JSON API


def month_payload(db: Session, auth: AuthSession, budget_month) -> dict[str, object]:
    overview = BudgetMonthService(db, auth.identity.id).overview(budget_month)
    return {
        "id": budget_month.id,
        "year": budget_month.year,
        "month": budget_month.month,
        "adjustment_reason": budget_month.adjustment_reason,
        "summary": overview["summary"].as_dict(),
        "allocations": [
            {
                "category_id": row["category"].id,
                "name": row["category"].name,
                "color": row["category"].color,
                "is_savings": row["category"].is_savings,
                "amount": str(row["amount"]),
            }
            for row in overview["rows"]
        ],
    }


@app.get("/api/months/current")
def api_current_month(
    db: Session = Depends(get_db), auth: AuthSession = Depends(current_session)
):
    if UserService(db, auth.identity.id).needs_onboarding():
        raise HTTPException(status_code=409, detail="Onboarding required")
    budget_month = BudgetMonthService(db, auth.identity.id).get_or_create_current()
    return month_payload(db, auth, budget_month)


@app.get("/api/budget/{year}/{month}")
def api_month(
    year: int,
    month: int,
    db: Session = Depends(get_db),
    auth: AuthSession = Depends(current_session),
):
    try:
        ref = resolve_month(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Not found") from exc
    budget_month = BudgetMonthService(db, auth.identity.id).get(ref.year, ref.month)
    if budget_month is None:
        raise HTTPException(status_code=404, detail="Budget month not found")
    return month_payload(db, auth, budget_month)


@app.get("/api/categories")
def api_categories(
    db: Session = Depends(get_db), auth: AuthSession = Depends(current_session)
):
    return [
        {
            "id": c.id,
            "name": c.name,
            "color": c.color,
            "is_savings": c.is_savings,
            "is_default": c.is_default,
            "sort_order": c.sort_order,
        }
        for c in CategoryService(db, auth.identity.id).list_all()
    ]


@app.get("/api/insights")
def api_insights(
    db: Session = Depends(get_db), auth: AuthSession = Depends(current_session)
):
    return InsightsService(db, auth.identity.id).summary().as_dict()


@app.get("/healthz")
def healthz():
    return {"status": "ok", "today": date.today().isoformat()}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
