from docpay.common.metadata import merge_metadata


def test_nested_dicts_merge_key_by_key():
    existing = {"last_webhook": {"provider_status": "PENDING", "event": "PAYMENT_CREATED"}, "note": "x"}
    merged = merge_metadata(existing, {"last_webhook": {"provider_status": "RECEIVED"}})

    assert merged == {
        "last_webhook": {"provider_status": "RECEIVED", "event": "PAYMENT_CREATED"},
        "note": "x",
    }


def test_inputs_are_not_mutated():
    existing = {"a": {"b": 1}}
    patch = {"a": {"c": [1, 2]}}
    merged = merge_metadata(existing, patch)
    merged["a"]["c"].append(3)

    assert existing == {"a": {"b": 1}}
    assert patch == {"a": {"c": [1, 2]}}


def test_non_dict_values_replace():
    assert merge_metadata({"a": {"b": 1}}, {"a": 5}) == {"a": 5}
    assert merge_metadata(None, {"a": 1}) == {"a": 1}
