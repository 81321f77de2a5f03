"""FastAPI dependencies: authenticated session and shared services."""

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from invoicehub.lifecycle.manager import InvoiceLifecycleManager
from invoicehub.repository.templates import TemplateRepository
from invoicehub.shared.errors import MissingSessionError
from invoicehub.shared.session import UserSession, decode_access_token

security = HTTPBearer(auto_error=False)


def get_user_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),  # noqa: B008
) -> UserSession:
    """Build the caller's session from the bearer token.

    Raises:
        MissingSessionError: No token or an invalid one (mapped to 401)
    """
    if credentials is None:
        raise MissingSessionError()
    return decode_access_token(credentials.credentials, request.app.state.settings)


def get_manager(request: Request) -> InvoiceLifecycleManager:
    manager: InvoiceLifecycleManager = request.app.state.manager
    return manager


def get_templates(request: Request) -> TemplateRepository:
    templates: TemplateRepository = request.app.state.templates
    return templates
