"""
远端订单网关 - 使用 WooCommerce REST API
参考: https://woocommerce.github.io/woocommerce-rest-api-docs/#orders

列表接口每次只能按一个 status 过滤，网关本身不关心状态含义，调用方传什么就查什么。
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from ordersync.core.config import Settings, get_settings
from ordersync.core.errors import AuthError, TransportError, ValidationError
from ordersync.schemas.orders import OrderPatch, RemoteOrder
from ordersync.sync_utils import format_api_ts

TOTAL_PAGES_HEADER = "X-WP-TotalPages"


@dataclass
class RejectedOrder:
    """列表中未通过校验的单条订单"""
    external_id: Optional[int]
    message: str


@dataclass
class OrderPage:
    """list_orders 的一页结果"""
    orders: list[RemoteOrder]
    has_more: bool
    rejected: list[RejectedOrder] = field(default_factory=list)


def _error_message(response: httpx.Response) -> str:
    """平台错误体形如 {"code": "...", "message": "..."}"""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        code = body.get("code")
        return f"{code}: {body['message']}" if code else str(body["message"])
    return response.text or response.reason_phrase


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise TransportError(f"响应不是合法 JSON: {response.request.method} {response.request.url.path}") from e


class RemoteOrderGateway:
    """远端订单网关（REST）"""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.api_url = self.settings.remote_api_url
        self.timeout = self.settings.REMOTE_TIMEOUT_SECONDS
        self._transport = transport
        if not self.settings.has_credentials():
            logger.warning("未配置 REMOTE_CONSUMER_KEY / REMOTE_CONSUMER_SECRET，请求将不带认证")

    def _client(self) -> httpx.AsyncClient:
        auth = None
        if self.settings.has_credentials():
            auth = httpx.BasicAuth(self.settings.REMOTE_CONSUMER_KEY, self.settings.REMOTE_CONSUMER_SECRET)
        return httpx.AsyncClient(
            base_url=self.api_url,
            auth=auth,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        external_id: Optional[int] = None,
    ) -> httpx.Response:
        """
        发起请求并把失败统一映射为同步引擎错误：
        超时/网络/429/5xx -> TransportError，401/403 -> AuthError，其余 4xx -> ValidationError
        """
        logger.debug(f"请求远端: {method} {path} params={params}")
        async with self._client() as client:
            try:
                response = await asyncio.wait_for(
                    client.request(method, path, params=params, json=json), timeout=self.timeout
                )
            except (httpx.TimeoutException, asyncio.TimeoutError) as e:
                raise TransportError(f"请求超时({self.timeout}s): {method} {path}", external_id=external_id) from e
            except httpx.TransportError as e:
                raise TransportError(f"网络错误: {method} {path}: {e}", external_id=external_id) from e

        status = response.status_code
        if status < 400:
            return response
        message = _error_message(response)
        logger.error(f"远端请求失败: {method} {path} -> {status} - {message}")
        if status in (401, 403):
            raise AuthError(f"认证失败({status}): {message}", external_id=external_id)
        if status == 429 or status >= 500:
            raise TransportError(f"远端不可用({status}): {message}", external_id=external_id)
        raise ValidationError(f"远端拒绝({status}): {message}", external_id=external_id)

    @staticmethod
    def _parse_order(payload: Any) -> RemoteOrder:
        if not isinstance(payload, dict):
            raise ValidationError(f"订单数据格式错误: {type(payload).__name__}")
        try:
            return RemoteOrder.from_payload(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"订单数据校验失败: {e.error_count()} 个字段不合法",
                external_id=payload.get("id") if isinstance(payload.get("id"), int) else None,
            ) from e

    async def list_orders(
        self,
        status: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> OrderPage:
        """
        获取一页订单。
        GET /orders?status=&after=&before=&page=&per_page=
        has_more 依据 X-WP-TotalPages 响应头；缺失时按本页是否满页判断。
        """
        params: dict[str, Any] = {
            "status": status,
            "page": page,
            "per_page": page_size,
            "orderby": "id",
            "order": "asc",
        }
        if date_from is not None:
            params["after"] = format_api_ts(date_from)
        if date_to is not None:
            params["before"] = format_api_ts(date_to)

        response = await self._request("GET", "/orders", params=params)
        body = _json_body(response)
        if not isinstance(body, list):
            raise TransportError(f"响应格式错误，期望订单列表: GET /orders page={page}")

        orders: list[RemoteOrder] = []
        rejected: list[RejectedOrder] = []
        for payload in body:
            try:
                orders.append(self._parse_order(payload))
            except ValidationError as e:
                logger.warning(f"跳过不合法的远端订单: {e}")
                rejected.append(RejectedOrder(external_id=e.external_id, message=e.message))

        total_pages = response.headers.get(TOTAL_PAGES_HEADER)
        if total_pages is not None and total_pages.strip().isdigit():
            has_more = page < int(total_pages)
        else:
            has_more = len(body) >= page_size

        logger.info(f"获取订单 status={status} page={page}: {len(orders)} 条, has_more={has_more}")
        return OrderPage(orders=orders, has_more=has_more, rejected=rejected)

    async def push_order_update(self, external_id: int, patch: OrderPatch) -> RemoteOrder:
        """
        推送单条订单的部分更新。
        PUT /orders/{id}，body 为 {status, total, billing}；返回平台更新后的订单。
        平台按订单 ID 幂等，重复推送相同内容无副作用。
        """
        logger.info(f"推送订单更新: external_id={external_id} status={patch.status} total={patch.total}")
        response = await self._request(
            "PUT", f"/orders/{external_id}", json=patch.to_payload(), external_id=external_id
        )
        return self._parse_order(_json_body(response))

    async def create_order(self, payload: dict[str, Any]) -> RemoteOrder:
        """POST /orders，用于把本地新建订单导出到平台"""
        logger.info("在远端创建订单")
        response = await self._request("POST", "/orders", json=payload)
        return self._parse_order(_json_body(response))

    async def ping(self) -> None:
        """连通性检查：取 1 条订单，认证或网络问题直接抛出"""
        await self._request("GET", "/orders", params={"per_page": 1})
        logger.info("✅ 远端 API 连接正常")
