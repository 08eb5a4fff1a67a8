import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dao_forum.config import settings
from dao_forum.coordinator import ConsistencyCoordinator
from dao_forum.errors import ErrorCode, ForumError, NotFound
from dao_forum.logging_utils import setup_logging, RequestLoggingMiddleware, log_forum_write
from dao_forum.metrics import get_metrics, get_metrics_content_type
from dao_forum.reply_index import create_reply_index
from dao_forum.schemas import (
    CreateMessageRequest,
    ErrorResponse,
    HealthResponse,
    MessagePageResponse,
    MessageResponse,
    MessageStatsResponse,
    MessageThreadResponse,
    MessageWithRepliesResponse,
    ReplyCursor,
    ReplyWindowResponse,
    ResyncResponse,
)
from dao_forum.storage import init_db, check_db_health, get_db, SqlMessageStore, SqlThreadOwners
from dao_forum.threads import MessageThread, ThreadAssembler
from dao_forum.utils import to_naive_utc


setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorCode.BAD_PARAMS: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and connect the Reply Index (once per process).
    Shutdown: close the Reply Index if it was opened here.
    """
    init_db()
    owns_index = getattr(app.state, "reply_index", None) is None
    if owns_index:
        app.state.reply_index = create_reply_index(settings)
    yield
    if owns_index:
        app.state.reply_index.close()
        app.state.reply_index = None


app = FastAPI(
    title="DAO Forum API",
    description="Threaded discussion boards for DAOs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ForumError)
async def forum_error_handler(request: Request, exc: ForumError) -> JSONResponse:
    if exc.code == ErrorCode.INTERNAL_ERROR:
        logger.error(f"Internal forum error on {request.method} {request.url.path}: {exc.message}")
    log_forum_write(request, result=exc.code.value.lower())
    return JSONResponse(
        status_code=ERROR_STATUS[exc.code],
        content={"detail": exc.message, "code": exc.code.value},
    )


# =============================================================================
# Dependencies
# =============================================================================

def get_reply_index(request: Request):
    return request.app.state.reply_index


def get_coordinator(db: Session = Depends(get_db), index=Depends(get_reply_index)) -> ConsistencyCoordinator:
    return ConsistencyCoordinator(SqlMessageStore(db), index, SqlThreadOwners(db))


def get_assembler(db: Session = Depends(get_db), index=Depends(get_reply_index)) -> ThreadAssembler:
    return ThreadAssembler(SqlMessageStore(db), index)


def get_caller_id(x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None) -> str:
    """Caller identity, supplied by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing caller identity"
        )
    return x_user_id


def to_message_response(message) -> MessageResponse:
    response = MessageResponse.model_validate(message)
    if message.is_deleted:
        response.body = None
    return response


def to_thread_response(thread: MessageThread) -> MessageThreadResponse:
    response = None
    for node in thread.chain():
        response = MessageThreadResponse(
            **to_message_response(node.message).model_dump(),
            deleted=node.deleted,
            reply_to=response,
        )
    return response


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
def health_ready(response: Response, index=Depends(get_reply_index)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the database schema is applied
    and the Reply Index answers; otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    if not index.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Reply index not reachable")

    return HealthResponse(status="ready")


# =============================================================================
# Thread Routes
# =============================================================================

@app.get("/daos/{dao_id}/messages", response_model=MessagePageResponse)
def list_messages(
    dao_id: str,
    page: Annotated[int, Query(ge=0, description="Zero-based page; clamped to the last page")] = 0,
    size: Annotated[int, Query(ge=1, le=100, description="Root messages per page")] = 10,
    reply_limit: Annotated[int, Query(ge=0, le=100, description="Replies previewed per root")] = settings.DEFAULT_REPLY_PREVIEW_LIMIT,
    assembler: ThreadAssembler = Depends(get_assembler),
) -> MessagePageResponse:
    """
    Root messages of a DAO, newest first, each with its reply count
    and oldest replies.
    """
    logger.info(f"GET /daos/{dao_id}/messages: page={page}, size={size}, reply_limit={reply_limit}")
    result = assembler.list_roots_with_preview(dao_id, page, size, reply_limit)

    return MessagePageResponse(
        list=[
            MessageWithRepliesResponse(
                **to_message_response(item.root).model_dump(),
                reply_count=item.reply_count,
                replies=[to_message_response(reply) for reply in item.replies],
            )
            for item in result.list
        ],
        total=result.total,
        pages=result.pages,
    )


@app.get("/messages/{message_id}/replies", response_model=ReplyWindowResponse)
def list_replies(
    message_id: str,
    cursor: Annotated[int, Query(ge=0, description="Rank of the first reply, 0 = oldest")] = 0,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    assembler: ThreadAssembler = Depends(get_assembler),
) -> ReplyWindowResponse:
    """Replies to a root message, oldest first, cursor-paginated."""
    window = assembler.list_replies(message_id, cursor, limit)
    return ReplyWindowResponse(
        items=[to_message_response(reply) for reply in window.items],
        total_items=window.total,
        cursor=ReplyCursor(next=window.next_cursor, previous=window.prev_cursor),
    )


@app.get(
    "/messages/{message_id}",
    response_model=MessageThreadResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_message(
    message_id: str,
    expand: Annotated[bool, Query(description="Include the chain of messages replied to")] = False,
    assembler: ThreadAssembler = Depends(get_assembler),
) -> MessageThreadResponse:
    if expand:
        return to_thread_response(assembler.resolve_with_ancestors(message_id))
    return MessageThreadResponse(**to_message_response(assembler.get_message(message_id)).model_dump())


@app.post(
    "/daos/{dao_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown DAO or invalid body"},
        401: {"description": "Missing caller identity"},
        404: {"model": ErrorResponse, "description": "Replied-to message not found"},
    },
)
def create_message(
    dao_id: str,
    payload: CreateMessageRequest,
    request: Request,
    caller_id: str = Depends(get_caller_id),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator),
) -> MessageResponse:
    message = coordinator.create_message(dao_id, caller_id, payload.message, payload.reply_to)
    log_forum_write(request, message_id=message.id, result="created")
    return to_message_response(message)


@app.delete(
    "/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        403: {"model": ErrorResponse, "description": "Caller is not the author"},
        404: {"model": ErrorResponse},
    },
)
def delete_message(
    message_id: str,
    request: Request,
    caller_id: str = Depends(get_caller_id),
    coordinator: ConsistencyCoordinator = Depends(get_coordinator),
) -> Response:
    coordinator.delete_message(message_id, caller_id)
    log_forum_write(request, message_id=message_id, result="deleted")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/daos/{dao_id}/reply-index/resync", response_model=ResyncResponse)
def resync_reply_index(
    dao_id: str,
    coordinator: ConsistencyCoordinator = Depends(get_coordinator),
) -> ResyncResponse:
    """Rebuild the Reply Index of every thread in a DAO from the database."""
    return ResyncResponse(**coordinator.resync_index(dao_id))


# =============================================================================
# Activity Routes
# =============================================================================

@app.get("/daos/{dao_id}/messages/recent", response_model=list[MessageResponse])
def recent_messages(
    dao_id: str,
    exclude: Annotated[str, Query(description="Author whose messages are skipped")],
    since: Annotated[Optional[datetime], Query(description="Lower bound on creation time (UTC)")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    db: Session = Depends(get_db),
) -> list[MessageResponse]:
    if since is not None:
        since = to_naive_utc(since)
    messages = SqlMessageStore(db).find_recent_excluding_author(dao_id, exclude, since, limit)
    return [to_message_response(message) for message in messages]


@app.get("/daos/{dao_id}/messages/stats", response_model=MessageStatsResponse)
def message_stats(dao_id: str, db: Session = Depends(get_db)) -> MessageStatsResponse:
    owners = SqlThreadOwners(db)
    if not owners.exists(dao_id):
        raise NotFound(f"Can't find dao {dao_id}")
    return MessageStatsResponse(**SqlMessageStore(db).stats(dao_id, owners.owner_of(dao_id)))


@app.get("/users/{author_id}/messages", response_model=list[MessageResponse])
def message_history(
    author_id: str,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    db: Session = Depends(get_db),
) -> list[MessageResponse]:
    """Latest messages written by an author, across every DAO."""
    return [to_message_response(message) for message in SqlMessageStore(db).history_for_author(author_id, limit)]


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
