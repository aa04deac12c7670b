"""Request context carried into audit entries without threading it through every call."""

import socket
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass
class AuditContext:
    request_id: UUID | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    client_hostname: str | None = None
    application_name: str = "epatient-access"

    def as_details(self) -> dict:
        details = {"application": self.application_name}
        if self.request_id is not None:
            details["request_id"] = str(self.request_id)
        if self.client_ip:
            details["client_ip"] = self.client_ip
        if self.user_agent:
            details["user_agent"] = self.user_agent
        if self.client_hostname:
            details["client_hostname"] = self.client_hostname
        return details


_audit_context: ContextVar[AuditContext | None] = ContextVar("audit_context", default=None)


def get_audit_context() -> AuditContext:
    """Get current audit context, creating default if none exists."""
    ctx = _audit_context.get()
    if ctx is None:
        ctx = AuditContext()
    return ctx


def set_audit_context(ctx: AuditContext) -> None:
    _audit_context.set(ctx)


def clear_audit_context() -> None:
    _audit_context.set(None)


@contextmanager
def audit_context(
    request_id: UUID | None = None,
    client_ip: str | None = None,
    user_agent: str | None = None,
    application_name: str | None = None,
):
    """Scope an audit context to one inbound request.

    A request id is generated when none is given. The previous context is
    restored on exit.
    """
    previous = _audit_context.get()
    ctx = AuditContext(
        request_id=request_id or uuid4(),
        client_ip=client_ip,
        user_agent=user_agent,
        application_name=application_name or "epatient-access",
    )
    _audit_context.set(ctx)
    try:
        yield ctx
    finally:
        _audit_context.set(previous)


def create_cli_context(request_id: UUID | None = None) -> AuditContext:
    """Audit context for administrative CLI invocations."""
    return AuditContext(
        request_id=request_id or uuid4(),
        client_hostname=socket.gethostname(),
        application_name="epatient-access-cli",
    )
