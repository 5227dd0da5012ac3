"""
平台状态归一化测试
"""
import pytest

from ordersync.schemas.orders import CanonicalStatus
from ordersync.services.status import StatusNormalizer


@pytest.mark.parametrize(
    "remote, expected",
    [
        ("completed", CanonicalStatus.COMPLETED),
        ("processing", CanonicalStatus.PROCESSING),
        ("on-hold", CanonicalStatus.PENDING),
        ("pending", CanonicalStatus.PENDING),
        ("shipped", CanonicalStatus.SHIPPED),
        ("cancelled", CanonicalStatus.CANCELLED),
        ("tamara-o-canceled", CanonicalStatus.CANCELLED),
        ("refunded", CanonicalStatus.REFUNDED),
        ("failed", CanonicalStatus.FAILED),
        ("wc-completed", CanonicalStatus.COMPLETED),
        ("  Processing ", CanonicalStatus.PROCESSING),
    ],
)
def test_known_statuses(remote, expected):
    assert StatusNormalizer().normalize(remote) == expected


@pytest.mark.parametrize(
    "remote",
    ["", "draft", "awaiting-shipment", "完成", "\x00", "a" * 500, None, 42],
)
def test_unknown_values_fall_back_to_pending(remote):
    assert StatusNormalizer().normalize(remote) == CanonicalStatus.PENDING


def test_every_result_is_canonical():
    normalizer = StatusNormalizer()
    inputs = ["completed", "x", "CANCELLED", "wc-", "-", "refunded ", "on_hold", "🚚"]
    for value in inputs:
        assert normalizer.normalize(value) in set(CanonicalStatus)


def test_unknown_status_logged_once_per_value(log_messages):
    normalizer = StatusNormalizer()
    for _ in range(3):
        normalizer.normalize("awaiting-pickup")
    normalizer.normalize("partially-paid")
    normalizer.normalize("completed")

    unknown = [m for m in log_messages if "未知的平台订单状态" in m]
    assert len(unknown) == 2
    assert any("awaiting-pickup" in m for m in unknown)
    assert any("partially-paid" in m for m in unknown)
