"""
FastAPI integration.

Usage:
    app = FastAPI()
    install_exception_handlers(app)

    @app.get("/accounts/{account_id}/posts")
    def list_posts(
        account_id: str,
        auth: AuthorizedRequest = Depends(require_api_key("read-content", resource_param="account_id")),
    ):
        ...

The token is read from X-API-Key, or from Authorization: Bearer. The usage
record is written when the endpoint returns or raises, with the status it
produced.
"""
import time
from functools import lru_cache
from typing import Callable, Iterator, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, Response, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from apikey_service.config import Settings, get_settings
from apikey_service.errors import APIKeyError, RateLimitExceeded
from apikey_service.key_store import KeyRecordStore
from apikey_service.logging_config import log_exception
from apikey_service.models import CallMetadata, Permission
from apikey_service.rate_limiter import RateLimiter
from apikey_service.repository import InMemoryKeyRepository, KeyRepository
from apikey_service.sql_repository import SQLKeyRepository
from apikey_service.tokens import TokenCodec
from apikey_service.validator import AuthorizedRequest, RequestValidator

# API key header schemes
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
bearer_scheme = HTTPBearer(auto_error=False)


def build_validator(
    settings: Optional[Settings] = None,
    repository: Optional[KeyRepository] = None,
) -> RequestValidator:
    """
    Wire the key store, rate limiter and validator from settings.

    Uses the SQL backend when DATABASE_URL is set, in-memory storage otherwise.
    """
    settings = settings or get_settings()
    if repository is None:
        if settings.database_url:
            repository = SQLKeyRepository.from_url(settings.database_url, echo=settings.database_echo)
        else:
            repository = InMemoryKeyRepository()
    key_store = KeyRecordStore(repository, TokenCodec.from_settings(settings), settings)
    return RequestValidator(key_store, RateLimiter.from_settings(settings))


@lru_cache(maxsize=1)
def get_validator() -> RequestValidator:
    """Process-wide validator. Override with app.dependency_overrides in tests."""
    return build_validator()


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _route_status(request: Request) -> int:
    route = request.scope.get("route")
    return getattr(route, "status_code", None) or 200


def _error_status(exc: BaseException) -> int:
    if isinstance(exc, (HTTPException, APIKeyError)):
        return exc.status_code
    return 500


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    if isinstance(exc, APIKeyError):
        return exc.message
    return type(exc).__name__


def _record_usage(
    authorized: AuthorizedRequest,
    request: Request,
    status_code: int,
    started: float,
    error_message: Optional[str] = None,
) -> None:
    content_length = request.headers.get("content-length")
    authorized.usage.record(CallMetadata(
        endpoint=request.url.path,
        method=request.method,
        status_code=status_code,
        response_time_ms=round((time.perf_counter() - started) * 1000, 2),
        request_size=int(content_length) if content_length and content_length.isdigit() else None,
        error_message=error_message,
    ))


def require_api_key(
    permission: Union[Permission, str],
    resource_param: Optional[str] = None,
) -> Callable[..., Iterator[AuthorizedRequest]]:
    """
    Build a dependency that requires a valid key with the given permission.

    Args:
        permission: Capability the endpoint needs
        resource_param: Path or query parameter naming the target resource,
            checked against the key's resource scopes
    """

    def dependency(
        request: Request,
        response: Response,
        api_key: Optional[str] = Security(api_key_header),
        credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
        validator: RequestValidator = Depends(get_validator),
    ) -> Iterator[AuthorizedRequest]:
        token = api_key or (credentials.credentials if credentials else None)

        resource_id = None
        if resource_param:
            resource_id = request.path_params.get(resource_param) or request.query_params.get(resource_param)

        started = time.perf_counter()
        authorized = validator.validate(
            token,
            permission,
            resource_id=resource_id,
            caller_ip=_client_ip(request),
            caller_agent=request.headers.get("user-agent"),
        )

        for name, value in authorized.rate_limit.headers().items():
            response.headers[name] = value

        # Every permitted call is recorded, including calls whose endpoint fails
        status_code = None
        error_message = None
        try:
            yield authorized
        except Exception as exc:
            status_code = _error_status(exc)
            error_message = _error_message(exc)
            raise
        finally:
            if status_code is None:
                status_code = response.status_code or _route_status(request)
            _record_usage(authorized, request, status_code, started, error_message)

    return dependency


async def api_key_exception_handler(request: Request, exc: APIKeyError) -> JSONResponse:
    """
    Render service errors as {"success": false, "error": ..., "code": ...}.

    Internal faults carry only the generic message; 429 adds Retry-After and
    X-RateLimit-* headers.
    """
    headers = exc.headers() if isinstance(exc, RateLimitExceeded) else None
    if exc.status_code >= 500:
        log_exception(exc, {"path": request.url.path, "method": request.method})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIKeyError, api_key_exception_handler)
