"""Typed request/response messages for the capture engine.

Every operation has one request and one response variant, discriminated
on ``type``. ``MessageRouter`` dispatches requests to the service.
"""

from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, Field, TypeAdapter

from region_capture.capture.errors import CaptureCancelledError, CaptureError, ErrorInfo
from region_capture.capture.models import EncodeOptions, ImageFormat
from region_capture.capture.service import RegionCaptureService

logger = structlog.get_logger(__name__)

PROTOCOL_VERSION = "1.0"


# Requests

class PingRequest(BaseModel):
    type: Literal["ping"] = "ping"


class CaptureRegionRequest(BaseModel):
    type: Literal["capture_region"] = "capture_region"
    selector: str = Field(..., min_length=1, description="CSS selector of the region")
    format: Literal["png", "jpeg"] | None = None
    quality: float | None = Field(None, ge=0.0, le=1.0)
    filename_template: str | None = None
    session_id: str | None = None
    include_data: bool = Field(False, description="Return the artifact as a data URI")


class CancelCaptureRequest(BaseModel):
    type: Literal["cancel_capture"] = "cancel_capture"
    session_id: str


class ManualSaveRequest(BaseModel):
    type: Literal["manual_save"] = "manual_save"
    session_id: str


class SessionStatusRequest(BaseModel):
    type: Literal["session_status"] = "session_status"
    session_id: str


CaptureRequest = Annotated[
    PingRequest | CaptureRegionRequest | CancelCaptureRequest | ManualSaveRequest | SessionStatusRequest,
    Field(discriminator="type"),
]

request_adapter: TypeAdapter[CaptureRequest] = TypeAdapter(CaptureRequest)


def parse_request(data: dict[str, Any]) -> CaptureRequest:
    """Validate a raw payload into a request variant.

    Raises:
        pydantic.ValidationError: Unknown ``type`` or invalid fields
    """
    return request_adapter.validate_python(data)


# Responses

class PongResponse(BaseModel):
    type: Literal["pong"] = "pong"
    version: str = PROTOCOL_VERSION


class CaptureCompletedResponse(BaseModel):
    type: Literal["capture_completed"] = "capture_completed"
    session_id: str
    filename: str
    format: str
    quality: float
    width: int
    height: int
    size_bytes: int
    saved_path: str | None = None
    manual_save_available: bool = False
    data_uri: str | None = None


class CancelAcknowledgedResponse(BaseModel):
    type: Literal["cancel_acknowledged"] = "cancel_acknowledged"
    session_id: str
    cancelled: bool


class ManualSaveCompletedResponse(BaseModel):
    type: Literal["manual_save_completed"] = "manual_save_completed"
    session_id: str
    path: str


class SessionStatusResponse(BaseModel):
    type: Literal["session_status"] = "session_status"
    session_id: str
    status: str
    progress: int
    error: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    kind: str
    message: str
    severity: str = "medium"
    retryable: bool = False
    user_action: str | None = None
    offer_manual_save: bool = False
    session_id: str | None = None

    @classmethod
    def from_error_info(cls, info: ErrorInfo, session_id: str | None = None) -> "ErrorResponse":
        return cls(
            kind=info.kind.value,
            message=info.message,
            severity=info.severity.value,
            retryable=info.retryable,
            user_action=info.user_action,
            offer_manual_save=info.should_offer_manual_save,
            session_id=session_id,
        )


CaptureResponse = Annotated[
    PongResponse
    | CaptureCompletedResponse
    | CancelAcknowledgedResponse
    | ManualSaveCompletedResponse
    | SessionStatusResponse
    | ErrorResponse,
    Field(discriminator="type"),
]


class MessageRouter:
    """Dispatches request variants to a RegionCaptureService."""

    def __init__(self, service: RegionCaptureService):
        self.service = service
        self.log = logger.bind(component="message_router")

    async def handle(self, request: CaptureRequest) -> CaptureResponse:
        self.log.debug("Handling message", type=request.type)
        match request:
            case PingRequest():
                return PongResponse()
            case CaptureRegionRequest():
                return await self._capture(request)
            case CancelCaptureRequest(session_id=session_id):
                return CancelAcknowledgedResponse(
                    session_id=session_id,
                    cancelled=self.service.cancel(session_id),
                )
            case ManualSaveRequest():
                return await self._manual_save(request)
            case SessionStatusRequest():
                return self._status(request)
            case _:
                return ErrorResponse(kind="invalid_request", message=f"Unsupported message type: {request.type}")

    async def _capture(self, request: CaptureRegionRequest) -> CaptureResponse:
        defaults = self.service.default_options()
        options = EncodeOptions(
            format=ImageFormat(request.format) if request.format else defaults.format,
            quality=request.quality if request.quality is not None else defaults.quality,
            filename_template=request.filename_template or defaults.filename_template,
        )
        try:
            session = await self.service.capture(request.selector, options, session_id=request.session_id)
        except CaptureCancelledError as e:
            return ErrorResponse(
                kind="cancelled",
                message=str(e),
                severity="low",
                session_id=e.session_id,
            )
        except CaptureError as e:
            return ErrorResponse.from_error_info(e.info, session_id=request.session_id)
        except ValueError as e:
            return ErrorResponse(kind="invalid_request", message=str(e), session_id=request.session_id)

        output = session.result
        return CaptureCompletedResponse(
            session_id=session.session_id,
            filename=output.filename,
            format=output.format.value,
            quality=output.quality,
            width=output.width,
            height=output.height,
            size_bytes=output.size_bytes,
            saved_path=session.saved_path,
            manual_save_available=self.service.store.get_pending_save(session.session_id) is not None,
            data_uri=output.data_uri if request.include_data else None,
        )

    async def _manual_save(self, request: ManualSaveRequest) -> CaptureResponse:
        try:
            path = await self.service.manual_save(request.session_id)
        except LookupError as e:
            return ErrorResponse(kind="not_found", message=str(e), session_id=request.session_id)
        except CaptureError as e:
            return ErrorResponse.from_error_info(e.info, session_id=request.session_id)
        return ManualSaveCompletedResponse(session_id=request.session_id, path=path)

    def _status(self, request: SessionStatusRequest) -> CaptureResponse:
        session = self.service.store.get(request.session_id)
        if session is None:
            return ErrorResponse(
                kind="not_found",
                message=f"Session {request.session_id} not found",
                session_id=request.session_id,
            )
        return SessionStatusResponse(
            session_id=session.session_id,
            status=session.status.value,
            progress=session.progress,
            error=session.error.to_dict() if session.error else None,
        )
