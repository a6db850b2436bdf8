from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gatehouse.api.schemas import Envelope, LoginRequest, SecondFactorRequest, ViewPayload
from gatehouse.service.auth import RequestContext
from gatehouse.service.errors import ValidationError
from gatehouse.service.outcomes import Outcome, View
from gatehouse.service.runtime import Runtime, get_runtime

router = APIRouter()

Body = TypeVar("Body", bound=BaseModel)


async def get_request_context(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> RequestContext:
    cookie = request.cookies.get(runtime.settings.session_cookie_name)
    session_id = await runtime.sessions.start(cookie)
    return RequestContext(
        session_id=session_id,
        url=str(request.url.replace(query="")),
        host=request.headers.get("host", ""),
    )


async def _read_body(request: Request, model: Type[Body]) -> Body:
    """Parse a JSON or form-encoded body into ``model``."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            raw: Any = await request.json()
        else:
            raw = dict(await request.form())
    except ValueError as exc:
        raise ValidationError("malformed request body") from exc
    if not isinstance(raw, dict):
        raise ValidationError("request body must be an object")
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "invalid request",
            detail={"fields": [".".join(str(p) for p in e["loc"]) for e in exc.errors()]},
        ) from exc


def _set_session_cookie(response: Response, runtime: Runtime, session_id: str) -> None:
    response.set_cookie(
        runtime.settings.session_cookie_name,
        session_id,
        max_age=runtime.settings.session_ttl_minutes * 60,
        httponly=True,
        secure=runtime.settings.session_cookie_secure,
        samesite="lax",
    )


async def _render(runtime: Runtime, ctx: RequestContext, outcome: Outcome) -> Response:
    session_id = outcome.session_id or ctx.session_id
    response: Response
    if isinstance(outcome, View):
        flashes: Dict[str, str] = await runtime.sessions.pull_flashes(session_id)
        if outcome.flash:
            level, message = outcome.flash
            flashes[level] = message
        payload = ViewPayload(view=outcome.name, context=outcome.context, flash=flashes)
        response = JSONResponse(
            Envelope(status="ok", data=payload.model_dump()).model_dump()
        )
    else:
        if outcome.flash:
            level, message = outcome.flash
            await runtime.sessions.flash(session_id, level, message)
        target = getattr(outcome, "path", None) or outcome.redirect_to
        response = RedirectResponse(target, status_code=303)
    _set_session_cookie(response, runtime, session_id)
    return response


@router.get("/login")
async def show_login(
    next_url: Optional[str] = Query(None, alias="next", max_length=2048),
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    if next_url:
        await runtime.auth.remember_intended(ctx, next_url)
    return await _render(runtime, ctx, await runtime.auth.begin_login(ctx))


@router.post("/login")
async def submit_login(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    body = await _read_body(request, LoginRequest)
    outcome = await runtime.auth.complete_login(ctx, body.email, body.password)
    return await _render(runtime, ctx, outcome)


@router.get("/auth/{provider}")
async def oauth_login(
    provider: str,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=512),
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    outcome = await runtime.auth.begin_oauth_login(ctx, provider, code=code, state=state)
    return await _render(runtime, ctx, outcome)


@router.get("/auth_unlink")
async def unlink_identity(
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    return await _render(runtime, ctx, await runtime.auth.unlink_identity(ctx))


@router.get("/validate_two_factor/{account_key}")
async def show_second_factor(
    account_key: str,
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    outcome = await runtime.auth.begin_second_factor_challenge(ctx, account_key)
    return await _render(runtime, ctx, outcome)


@router.post("/validate_two_factor/{account_key}")
async def submit_second_factor(
    account_key: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    body = await _read_body(request, SecondFactorRequest)
    outcome = await runtime.auth.complete_second_factor_challenge(
        ctx, body.totp, account_key=account_key
    )
    return await _render(runtime, ctx, outcome)


@router.get("/logout")
async def logout(
    force_logout: bool = Query(False),
    reason: Optional[str] = Query(None, max_length=64),
    ctx: RequestContext = Depends(get_request_context),
    runtime: Runtime = Depends(get_runtime),
):
    outcome = await runtime.auth.logout(ctx, force=force_logout, reason=reason)
    return await _render(runtime, ctx, outcome)
