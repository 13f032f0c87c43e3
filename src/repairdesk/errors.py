"""Error taxonomy shared by the engine, the RPC layer and the client.

Every failure carries a stable ``code``, a ``category`` that tells the caller
whether a retry can help, and a localized message that is safe to show to
shop staff. ``details`` holds structured specifics (for example the parts that
are short on stock) and ``cause`` keeps the underlying exception for logs.
"""
from __future__ import annotations

from typing import Any

VALIDATION = "validation"
AUTHORIZATION = "authorization"
INFRASTRUCTURE = "infrastructure"
UNKNOWN = "unknown"

MESSAGES: dict[str, str] = {
    "INSUFFICIENT_STOCK": "Tồn kho không đủ cho một hoặc nhiều phụ tùng",
    "PART_NOT_FOUND": "Không tìm thấy phụ tùng trong kho",
    "INVALID_PART": "Dữ liệu phụ tùng không hợp lệ",
    "INVALID_STATUS": "Trạng thái không hợp lệ",
    "INVALID_PAYMENT_STATUS": "Trạng thái thanh toán không hợp lệ",
    "INVALID_PAYMENT_METHOD": "Phương thức thanh toán không hợp lệ",
    "INVALID_PAYMENT_AMOUNT": "Số tiền thanh toán không hợp lệ",
    "SETTLEMENT_NOT_ALLOWED": "Chỉ thanh toán thêm khi trả máy",
    "UNAUTHORIZED": "Bạn không có quyền thực hiện thao tác này",
    "BRANCH_MISMATCH": "Chi nhánh không khớp với quyền hiện tại",
    "ORDER_NOT_FOUND": "Không tìm thấy phiếu sửa chữa",
    "ORDER_EXISTS": "Mã phiếu sửa chữa đã tồn tại",
    "ORDER_REFUNDED": "Phiếu đã hoàn tiền, không thể thay đổi tài chính",
    "ORDER_LOCKED": "Phiếu đã thanh toán và trả máy, không thể sửa giá",
    "ALREADY_REFUNDED": "Phiếu này đã được hoàn tiền rồi",
    "INVALID_INPUT": "Dữ liệu không hợp lệ",
    "UNKNOWN_OPERATION": "Thao tác không được hỗ trợ",
    "SUBMISSION_IN_PROGRESS": "Đang xử lý, vui lòng đợi",
    "NETWORK_ERROR": "Lỗi kết nối tới máy chủ",
    "OPERATION_FAILED": "Thao tác thất bại",
}

_HTTP_STATUS = {
    VALIDATION: 400,
    AUTHORIZATION: 403,
    INFRASTRUCTURE: 503,
    UNKNOWN: 500,
}


class EngineError(Exception):
    category = UNKNOWN
    default_code = "OPERATION_FAILED"

    def __init__(
        self,
        code: str | None = None,
        details: Any = None,
        *,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.details = details
        self.cause = cause
        self._message = message
        super().__init__(f"{self.code}: {self.message}")

    @property
    def message(self) -> str:
        if self._message:
            return self._message
        return MESSAGES.get(self.code, MESSAGES["OPERATION_FAILED"])

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS.get(self.category, 500)

    @property
    def retryable(self) -> bool:
        return self.category == INFRASTRUCTURE

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(EngineError):
    category = VALIDATION
    default_code = "INVALID_INPUT"


class NotFoundError(ValidationError):
    default_code = "ORDER_NOT_FOUND"

    @property
    def http_status(self) -> int:
        return 404


class InsufficientStockError(ValidationError):
    default_code = "INSUFFICIENT_STOCK"

    def __init__(self, items: list[dict], **kwargs: Any) -> None:
        super().__init__("INSUFFICIENT_STOCK", list(items), **kwargs)

    @property
    def message(self) -> str:
        if self._message:
            return self._message
        listing = ", ".join(
            f"{d.get('partName') or d.get('partId') or '?'} (còn {d.get('available')}, cần {d.get('requested')})"
            for d in (self.details or [])
        )
        if not listing:
            return MESSAGES["INSUFFICIENT_STOCK"]
        return f"Thiếu tồn kho: {listing}"


class AuthorizationError(EngineError):
    category = AUTHORIZATION
    default_code = "UNAUTHORIZED"


class InfrastructureError(EngineError):
    category = INFRASTRUCTURE
    default_code = "NETWORK_ERROR"


class SubmissionInProgress(ValidationError):
    default_code = "SUBMISSION_IN_PROGRESS"


class OperationFailed(EngineError):
    category = UNKNOWN
    default_code = "OPERATION_FAILED"


_BY_CODE: dict[str, type[EngineError]] = {
    "ORDER_NOT_FOUND": NotFoundError,
    "PART_NOT_FOUND": NotFoundError,
    "UNKNOWN_OPERATION": NotFoundError,
    "UNAUTHORIZED": AuthorizationError,
    "BRANCH_MISMATCH": AuthorizationError,
    "NETWORK_ERROR": InfrastructureError,
    "OPERATION_FAILED": OperationFailed,
    "SUBMISSION_IN_PROGRESS": SubmissionInProgress,
}


def from_payload(payload: dict, *, cause: BaseException | None = None) -> EngineError:
    """Rebuild the typed error from a ``{code, message, details}`` payload."""
    code = str(payload.get("code") or "OPERATION_FAILED")
    details = payload.get("details")
    message = payload.get("message") or None
    if code == "INSUFFICIENT_STOCK":
        return InsufficientStockError(details or [], message=message, cause=cause)
    cls = _BY_CODE.get(code)
    if cls is None:
        cls = ValidationError if code in MESSAGES else OperationFailed
    return cls(code, details, message=message, cause=cause)
