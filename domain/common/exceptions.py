"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class UserInactiveException(BusinessException):
    def __init__(self):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message="User account is inactive",
            error_type="UserInactive",
        )


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class PlanNotFoundException(BusinessException):
    """套餐不存在"""

    def __init__(self, plan_id: int):
        super().__init__(
            code=PaymentCode.PLAN_NOT_FOUND,
            message="Plan not found",
            error_type="PlanNotFound",
            details={"plan_id": plan_id},
            field="plan_id",
        )


class PlanUnavailableException(BusinessException):
    """套餐已下架或不在售卖时间窗口内"""

    def __init__(self, plan_id: int):
        super().__init__(
            code=PaymentCode.PLAN_UNAVAILABLE,
            message="Plan is not available for purchase",
            error_type="PlanUnavailable",
            details={"plan_id": plan_id},
            field="plan_id",
        )


class TransactionNotFoundException(BusinessException):
    """交易记录不存在"""

    def __init__(self, transaction_id: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details={"transaction_id": transaction_id},
        )


class InvalidTransactionTransition(BusinessException):
    """非法的状态迁移"""

    def __init__(self, transaction_id: str, current: str, target: str):
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Cannot move transaction from {current} to {target}",
            error_type="InvalidTransactionTransition",
            details={"transaction_id": transaction_id, "current": current, "target": target},
            field="status",
        )


class ConcurrentModificationException(BusinessException):
    """乐观锁冲突重试耗尽"""

    def __init__(self, transaction_id: str):
        super().__init__(
            code=PaymentCode.CONCURRENT_MODIFICATION,
            message="Transaction was modified concurrently, please retry",
            error_type="ConcurrentModification",
            details={"transaction_id": transaction_id},
        )


class RefundExceedsBalanceException(BusinessException):
    """退款金额超过可退余额"""

    def __init__(self, requested: Decimal, available: Decimal):
        super().__init__(
            code=PaymentCode.REFUND_EXCEEDS_BALANCE,
            message=f"Refund amount {requested} exceeds refundable balance {available}",
            error_type="RefundExceedsBalance",
            details={"requested": str(requested), "available": str(available)},
            field="amount",
        )


class TransactionNotRefundableException(BusinessException):
    """当前状态不可退款"""

    def __init__(self, transaction_id: str, status: str):
        super().__init__(
            code=PaymentCode.NOT_REFUNDABLE,
            message=f"Transaction in status {status} cannot be refunded",
            error_type="TransactionNotRefundable",
            details={"transaction_id": transaction_id, "status": status},
        )


class PaymentGatewayException(BusinessException):
    """支付网关调用失败"""

    def __init__(self, message: str = "Payment gateway error", *, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentGatewayError",
            details=details,
        )


class PaymentVerificationFailedException(BusinessException):
    """网关确认未支付"""

    def __init__(self, transaction_id: str, gateway_status: Optional[str]):
        super().__init__(
            code=PaymentCode.VERIFICATION_FAILED,
            message="Payment verification failed",
            error_type="PaymentVerificationFailed",
            details={"transaction_id": transaction_id, "gateway_status": gateway_status},
        )


class WebhookSignatureException(BusinessException):
    """Webhook 签名校验失败"""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="WebhookSignatureInvalid",
        )


class RateLimitExceededException(BusinessException):
    """请求过于频繁"""

    def __init__(self, scope: str, retry_after: Optional[int] = None):
        super().__init__(
            code=BusinessCode.TOO_MANY_REQUESTS,
            message="Too many requests, please try again later",
            error_type="RateLimitExceeded",
            details={"scope": scope, "retry_after": retry_after},
        )
