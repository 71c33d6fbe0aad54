from collections.abc import Generator

from fastapi import Depends, HTTPException, Request
from sqlmodel import Session

from pillsync.triggers.context import HandlerContext


def get_context(request: Request) -> HandlerContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Runtime not initialized")
    return ctx


def get_session(ctx: HandlerContext = Depends(get_context)) -> Generator[Session, None, None]:
    """Request-scoped session whose commits fire document triggers."""
    with ctx.session() as session:
        yield session
