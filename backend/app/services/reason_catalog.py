from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import List


@dataclass(frozen=True)
class ReturnReason:
    value: str
    label: str
    requires_evidence: bool


_REASONS = (
    ReturnReason("not_received", "Chưa nhận được hàng", False),
    ReturnReason("damaged", "Hàng bị hư hỏng/vỡ", True),
    ReturnReason("wrong_item", "Giao sai sản phẩm", True),
    ReturnReason("not_as_described", "Không đúng mô tả/hình ảnh", True),
    ReturnReason("defective", "Sản phẩm lỗi/không hoạt động", True),
    ReturnReason("fake_product", "Hàng giả/nhái", True),
    ReturnReason("missing_parts", "Thiếu phụ kiện/quà tặng", True),
    ReturnReason("wrong_quantity", "Sai số lượng", True),
    ReturnReason("change_mind", "Đổi ý (không muốn mua nữa)", False),
    ReturnReason("other", "Lý do khác", False),
)

RETURN_REASONS = MappingProxyType({r.value: r for r in _REASONS})


def reason_label(code: str) -> str:
    # unknown codes are shown verbatim rather than rejected
    reason = RETURN_REASONS.get(code)
    return reason.label if reason else code


def requires_evidence(code: str) -> bool:
    reason = RETURN_REASONS.get(code)
    return bool(reason and reason.requires_evidence)


def list_reasons() -> List[dict]:
    return [asdict(r) for r in _REASONS]
