import logging
import time
import uuid
from typing import Callable, Optional, Tuple

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from hemolink.utils.logging_config import (
    LogContext,
    log_api_access,
    log_performance_metric,
    log_security_event,
)
from hemolink.utils.security import TokenManager

logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging with a per-request log context"""

    def __init__(self, app: FastAPI, log_requests: bool = True, log_responses: bool = True):
        super().__init__(app)
        self.log_requests = log_requests
        self.log_responses = log_responses

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        client_ip = self.get_client_ip(request)
        subject, role = self.peek_identity(request)

        with LogContext(req_id=request_id, subject=subject, role=role):
            start_time = time.time()

            if self.log_requests:
                logger.info(
                    f"Incoming request: {request.method} {request.url.path}",
                    extra={
                        "extra_fields": {
                            "http_method": request.method,
                            "path": str(request.url.path),
                            "query_params": dict(request.query_params),
                            "client_ip": client_ip,
                            "action": "request_received",
                        }
                    },
                )

            try:
                response = await call_next(request)
            except Exception as e:
                response_time = time.time() - start_time
                logger.error(
                    f"Request failed: {request.method} {request.url.path}",
                    extra={
                        "extra_fields": {
                            "http_method": request.method,
                            "path": str(request.url.path),
                            "error_type": type(e).__name__,
                            "response_time_seconds": round(response_time, 4),
                            "client_ip": client_ip,
                            "action": "request_failed",
                        }
                    },
                    exc_info=True,
                )
                raise

            response_time = time.time() - start_time
            status_code = response.status_code

            if self.log_responses:
                logger.info(
                    f"Request completed: {request.method} {request.url.path} - {status_code}",
                    extra={
                        "extra_fields": {
                            "http_method": request.method,
                            "path": str(request.url.path),
                            "status_code": status_code,
                            "response_time_seconds": round(response_time, 4),
                            "action": "request_completed",
                        }
                    },
                )

            log_api_access(
                method=request.method,
                path=str(request.url.path),
                status_code=status_code,
                response_time=response_time,
                subject=subject,
                ip_address=client_ip,
            )

            if response_time > 1.0:
                log_performance_metric(
                    operation=f"{request.method} {request.url.path}",
                    duration_seconds=response_time,
                    additional_metrics={"status_code": status_code},
                )

            if status_code in (401, 403):
                log_security_event(
                    event_type="unauthorized_access_attempt",
                    subject=subject,
                    ip_address=client_ip,
                    details={"path": str(request.url.path), "method": request.method},
                )

            response.headers["X-Request-ID"] = request_id
            return response

    @staticmethod
    def peek_identity(request: Request) -> Tuple[Optional[str], Optional[str]]:
        """Best-effort token read for log context; auth is enforced by the routes."""
        auth_header = request.headers.get("authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None, None
        try:
            payload = TokenManager.decode_token(auth_header.split(" ", 1)[1])
        except ValueError:
            return None, None
        return payload.get("sub"), payload.get("role")

    @staticmethod
    def get_client_ip(request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"
