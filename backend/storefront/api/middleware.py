import logging
from collections.abc import Callable, Iterable

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from storefront.core.errors import FileTooLarge

logger = logging.getLogger(__name__)

# Room for boundaries, part headers and a long filename around the file itself
MULTIPART_OVERHEAD_BYTES = 64 * 1024


class UploadSizeLimitMiddleware:
    """Reject upload bodies larger than the file limit before they are parsed.

    A declared ``Content-Length`` over the limit is answered with 413 without
    reading the body. Otherwise body chunks are counted as the form parser
    pulls them, and parsing is aborted once the count crosses the limit, so
    chunked requests cannot spool more than the limit either.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        paths: Iterable[str],
        max_file_size: Callable[[], int],
        overhead: int = MULTIPART_OVERHEAD_BYTES,
    ) -> None:
        self.app = app
        self.paths = frozenset(p.rstrip("/") for p in paths)
        self.max_file_size = max_file_size
        self.overhead = overhead

    def _applies(self, scope: Scope) -> bool:
        return (
            scope["type"] == "http"
            and scope["method"] == "POST"
            and scope["path"].rstrip("/") in self.paths
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if not self._applies(scope):
            await self.app(scope, receive, send)
            return

        max_file_size = self.max_file_size()
        limit = max_file_size + self.overhead
        error = FileTooLarge(f"File too large. Maximum is {max_file_size} bytes.")

        content_length = _content_length(scope)
        if content_length is not None and content_length > limit:
            logger.warning(
                "Upload rejected before parsing: Content-Length %d over limit %d",
                content_length, limit,
            )
            response = JSONResponse(status_code=error.status_code, content={"detail": error.to_dict()})
            await response(scope, receive, send)
            return

        received = 0

        async def bounded_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    logger.warning("Upload body aborted after %d bytes (limit %d)", received, limit)
                    # FastAPI re-raises HTTPException from body parsing unchanged
                    raise HTTPException(status_code=error.status_code, detail=error.to_dict())
            return message

        await self.app(scope, bounded_receive, send)


def _content_length(scope: Scope) -> int | None:
    for name, value in scope["headers"]:
        if name == b"content-length":
            try:
                return int(value)
            except ValueError:
                return None
    return None
