"""
配置管理模块
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# 获取项目根目录
PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_TRACKED_STATUSES = [
    "pending",
    "processing",
    "on-hold",
    "completed",
    "cancelled",
    "refunded",
    "failed",
]


class Settings(BaseSettings):
    """应用配置"""

    # 环境
    ENV: str = "dev"

    # 应用配置
    APP_NAME: str = "Order Sync"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # 数据库配置（可选，测试时不需要）
    DATABASE_URL: Optional[str] = None

    # 远端电商平台（WooCommerce REST）配置
    REMOTE_API_BASE_URL: str
    REMOTE_API_VERSION: str = "wc/v3"
    REMOTE_CONSUMER_KEY: Optional[str] = None
    REMOTE_CONSUMER_SECRET: Optional[str] = None
    REMOTE_TIMEOUT_SECONDS: float = 30.0

    # 平台拒收非法邮箱，推送前用此地址替换
    FALLBACK_CONTACT_EMAIL: str = "orders@example.com"

    # 同步参数
    TRACKED_STATUSES: Annotated[list[str], NoDecode] = DEFAULT_TRACKED_STATUSES
    SYNC_LOOKBACK_DAYS: int = 7
    SYNC_WINDOW_DAYS: int = 1
    SYNC_PAGE_SIZE: int = 100
    SYNC_PAGE_DELAY_SECONDS: float = 0.5
    SYNC_WORKERS: int = 4
    SYNC_INTERVAL_SECONDS: float = 300.0
    AUTO_SYNC_ENABLED: bool = False
    EXPORT_NEW_ORDERS: bool = False

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("TRACKED_STATUSES", mode="before")
    @classmethod
    def _split_statuses(cls, value):
        """支持逗号分隔或 JSON 数组两种写法"""
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                value = json.loads(text)
            else:
                value = text.split(",")
        statuses = [str(s).strip() for s in value if str(s).strip()]
        if not statuses:
            raise ValueError("TRACKED_STATUSES 不能为空")
        return statuses

    @field_validator("SYNC_WORKERS")
    @classmethod
    def _clamp_workers(cls, value: int) -> int:
        return max(1, min(value, 8))

    @field_validator("SYNC_PAGE_SIZE")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        # WooCommerce per_page 上限 100
        return max(1, min(value, 100))

    @property
    def remote_api_url(self) -> str:
        """远端 REST API 基础 URL，如 https://shop.example.com/wp-json/wc/v3"""
        return f"{self.REMOTE_API_BASE_URL.rstrip('/')}/wp-json/{self.REMOTE_API_VERSION.strip('/')}"

    def has_credentials(self) -> bool:
        """是否配置了 consumer key + secret"""
        return bool(self.REMOTE_CONSUMER_KEY and self.REMOTE_CONSUMER_SECRET)


@lru_cache
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
