"""秒杀预占业务异常

所有业务异常都继承 ReservationError，携带 HTTP 状态码和稳定的错误码，
由 app.main 中的全局异常处理器统一转换为 JSON 响应。
"""

from typing import Optional


class ReservationError(Exception):
    """预占业务异常基类"""

    status_code = 400
    code = "RESERVATION_ERROR"
    default_message = "预占操作失败"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InsufficientStock(ReservationError):
    """剩余库存不足（可用更小数量重试）"""

    status_code = 409
    code = "INSUFFICIENT_STOCK"
    default_message = "库存不足"

    def __init__(self, requested: int = None, message: Optional[str] = None):
        self.requested = requested
        super().__init__(message)


class LimitExceeded(ReservationError):
    """超出每人限购数量（不可重试）"""

    status_code = 409
    code = "LIMIT_EXCEEDED"

    def __init__(self, per_user_limit: int = None, message: Optional[str] = None):
        self.per_user_limit = per_user_limit
        if message is None and per_user_limit is not None:
            message = f"超出限购数量，每人最多购买 {per_user_limit} 件"
        super().__init__(message or "超出限购数量")


class NotFound(ReservationError):
    """预占记录不存在（调用方错误或记录已被清理）"""

    status_code = 404
    code = "RESERVATION_NOT_FOUND"
    default_message = "未找到预占记录"


class SaleNotFound(ReservationError):
    status_code = 404
    code = "SALE_NOT_FOUND"
    default_message = "未找到秒杀活动或活动商品"


class AlreadyTerminal(ReservationError):
    """预占已处于终态（completed / expired）"""

    status_code = 409
    code = "ALREADY_TERMINAL"

    def __init__(self, status: str = None, message: Optional[str] = None):
        self.status = status
        if message is None and status is not None:
            message = f"预占记录已处理，当前状态: {status}"
        super().__init__(message or "预占记录已处理")


class SaleNotActive(ReservationError):
    """不在秒杀时间窗口内"""

    status_code = 400
    code = "SALE_NOT_ACTIVE"
    default_message = "秒杀活动未开始或已结束"


class EarlyAccessOnly(SaleNotActive):
    status_code = 403
    code = "EARLY_ACCESS_ONLY"
    default_message = "当前为会员优先购时段"


class InvalidRequest(ReservationError):
    code = "INVALID_REQUEST"
    default_message = "请求参数不合法"


class InvalidSaleState(ReservationError):
    """活动当前状态不允许该操作（例如修改进行中的活动）"""

    code = "INVALID_SALE_STATE"
    default_message = "秒杀活动当前状态不允许该操作"
