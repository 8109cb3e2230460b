"""
数据传输对象（DTO）- 应用层与表现层之间的数据传输

金额一律使用最小货币单位整数（如分），币种为 ISO-4217 三位字母代码。
"""
from pydantic import BaseModel, Field, field_validator, model_serializer, ConfigDict
from typing import Optional
from datetime import datetime, timezone

from domain.order.entity import Order, OrderLine


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                s = ts.astimezone(timezone.utc).isoformat()
                return s.replace("+00:00", "Z")
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


class OrderLineInputDTO(DTOBase):
    """订单行输入"""
    product_ref: str = Field(..., min_length=1, max_length=64)
    description: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(..., ge=0, description="单价（最小货币单位）")


class OrderDraftDTO(DTOBase):
    """订单草稿：预览与创建共用同一输入"""
    currency: str = Field(default="USD")
    buyer_ref: Optional[str] = Field(None, max_length=64)
    lines: list[OrderLineInputDTO] = Field(..., min_length=1)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        return _validate_currency(v)


class OrderLineDTO(DTOBase):
    position: int
    product_ref: str
    description: str
    quantity: int
    unit_price: int
    line_total: int

    @classmethod
    def from_entity(cls, line: OrderLine, position: int) -> "OrderLineDTO":
        return cls(
            position=position,
            product_ref=line.product_ref,
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unit_price.minor,
            line_total=line.line_total.minor,
        )


class OrderResponseDTO(DTOBase):
    """订单响应DTO；预览时 id 为空、state 为 draft"""
    id: Optional[int] = None
    state: str
    currency: str
    total: int
    buyer_ref: Optional[str] = None
    lines: list[OrderLineDTO]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_entity(cls, order: Order) -> "OrderResponseDTO":
        return cls(
            id=order.id,
            state=order.state.value,
            currency=order.currency,
            total=order.total.minor,
            buyer_ref=order.buyer_ref,
            lines=[OrderLineDTO.from_entity(line, i) for i, line in enumerate(order.lines)],
            created_at=order.created_at,
            updated_at=order.updated_at,
            cancelled_at=order.cancelled_at,
        )


class PaymentMethodDTO(DTOBase):
    """可用支付方式"""
    key: str
    display_name: str
    flow: str
