"""
订单相关 Schema

本地 orders 表与远端（WooCommerce REST）订单字段对照:
  external_id:      id
  order_number:     "#" + number
  customer:         billing.first_name / last_name / phone / email
  billing_address:  billing.address_1 / address_2 / city / state / country / postcode
  line_items:       line_items[].product_id / name / quantity / price / sku
  amounts.subtotal: total - shipping_total - total_tax
  amounts.shipping_amount: shipping_total
  amounts.discount_amount: discount_total
  amounts.total:    total
  status:           status（经 services.status 归一化）
  payment_method:   payment_method_title
  created_at/updated_at: date_created_gmt / date_modified_gmt（无则取本地时间字段）
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ordersync.sync_utils import parse_iso_ts, to_amount

AMOUNT_EPSILON = 0.01


class CanonicalStatus(str, Enum):
    """引擎内部统一的订单状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class Customer(BaseModel):
    """客户信息（email 可能缺失或格式不合法）"""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    email: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BillingAddress(BaseModel):
    """账单地址"""
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postcode: str = ""

    model_config = ConfigDict(from_attributes=True)


class LineItem(BaseModel):
    """订单行项目"""
    product_id: Optional[int] = None
    name: str = ""
    quantity: int = 1
    unit_price: float = 0.0
    sku: str = ""

    model_config = ConfigDict(from_attributes=True)


class Amounts(BaseModel):
    """订单金额；约定 total ≈ subtotal + shipping_amount - discount_amount"""
    subtotal: float = 0.0
    shipping_amount: float = 0.0
    discount_amount: float = 0.0
    total: float = 0.0

    model_config = ConfigDict(from_attributes=True)

    def is_consistent(self) -> bool:
        expected = self.subtotal + self.shipping_amount - self.discount_amount
        return abs(expected - self.total) <= AMOUNT_EPSILON


class OrderRecord(BaseModel):
    """本地订单记录（orders 表一行）"""
    id: Optional[int] = None
    external_id: Optional[int] = None
    order_number: str = ""
    customer: Customer = Field(default_factory=Customer)
    billing_address: BillingAddress = Field(default_factory=BillingAddress)
    line_items: list[LineItem] = []
    amounts: Amounts = Field(default_factory=Amounts)
    status: CanonicalStatus = CanonicalStatus.PENDING
    payment_method: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_synced_to_remote: bool = False
    last_sync_attempt: Optional[datetime] = None
    sync_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at", "last_sync_attempt", mode="after")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        # 无时区的时间按 UTC 处理，与 parse_iso_ts 一致
        return parse_iso_ts(value)


class RemoteBilling(BaseModel):
    """远端 billing 结构"""
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""
    email: Optional[str] = None
    phone: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_empty(cls, value, info):
        if value is None and info.field_name != "email":
            return ""
        return value


class RemoteLineItem(BaseModel):
    """远端 line_items[] 结构"""
    product_id: Optional[int] = None
    name: str = ""
    quantity: int = 1
    price: float = 0.0
    sku: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value):
        # 数量非法时按 1 处理
        try:
            qty = int(value)
        except (TypeError, ValueError):
            return 1
        return qty if qty > 0 else 1

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, value):
        return to_amount(value)

    @field_validator("sku", "name", mode="before")
    @classmethod
    def _text(cls, value):
        return value or ""


class RemoteOrder(BaseModel):
    """
    远端订单（仅在内存中流转，不直接落库）。
    在 Gateway 边界由平台 JSON 校验构造，金额为字符串时转 float。
    """
    id: int
    number: str = ""
    status: str = ""
    billing: RemoteBilling = Field(default_factory=RemoteBilling)
    line_items: list[RemoteLineItem] = []
    total: float = 0.0
    shipping_total: float = 0.0
    discount_total: float = 0.0
    total_tax: float = 0.0
    payment_method_title: str = ""
    date_created: Optional[datetime] = None
    date_modified: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("total", "shipping_total", "discount_total", "total_tax", mode="before")
    @classmethod
    def _amount(cls, value):
        return to_amount(value)

    @field_validator("number", "status", "payment_method_title", mode="before")
    @classmethod
    def _text(cls, value):
        return "" if value is None else str(value)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RemoteOrder":
        """从平台 JSON 构造；时间优先取 *_gmt 字段（按 UTC 解析）"""
        data = dict(payload)
        data["date_created"] = parse_iso_ts(payload.get("date_created_gmt") or payload.get("date_created"))
        data["date_modified"] = parse_iso_ts(payload.get("date_modified_gmt") or payload.get("date_modified"))
        return cls.model_validate(data)

    @property
    def subtotal(self) -> float:
        """小计 = 总价 - 运费 - 税"""
        return round(self.total - self.shipping_total - self.total_tax, 2)


class BillingPatch(BaseModel):
    """推送给平台的 billing 片段"""
    first_name: str = ""
    last_name: str = ""
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""
    email: str = ""
    phone: str = ""


class OrderPatch(BaseModel):
    """PUT /orders/{id} 的部分更新体 {status, total, billing}；status 为空时不回写状态"""
    status: Optional[str] = None
    total: str
    billing: BillingPatch

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
