"""
业务码：响应信封 code 字段的取值

通用码在 BusinessCode；支付、回调、收据相关见 shared.codes.payment_codes。
1xxxx 参数错误，2xxxx 业务错误，4xxxx 系统错误。
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006
    ORDER_NOT_FOUND = 20101
    PAYMENT_NOT_FOUND = 20102
    ORDER_NOT_PAYABLE = 20103
    ORDER_NOT_CANCELLABLE = 20104
    CONFLICT = 20109  # 乐观锁冲突，重试后仍失败

    SYSTEM_ERROR = 40000
    DATABASE_ERROR = 40001
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode"]
