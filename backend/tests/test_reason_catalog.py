from app.services.reason_catalog import (
    RETURN_REASONS,
    list_reasons,
    reason_label,
    requires_evidence,
)


def test_evidence_gate():
    assert requires_evidence("damaged")
    assert requires_evidence("wrong_item")
    assert not requires_evidence("change_mind")
    assert not requires_evidence("not_received")


def test_unknown_reason_is_lenient():
    assert reason_label("brand_new_code") == "brand_new_code"
    assert not requires_evidence("brand_new_code")


def test_catalog_is_read_only():
    try:
        RETURN_REASONS["x"] = None
    except TypeError:
        pass
    else:
        raise AssertionError("catalog should be immutable")


def test_list_reasons_shape():
    reasons = list_reasons()
    assert {"value", "label", "requires_evidence"} <= set(reasons[0])
    assert [r["value"] for r in reasons][-1] == "other"
