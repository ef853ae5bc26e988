import pytest

from flagrelay.attributes import (
    EXCEPTION_TYPE_KEY,
    FEATURE_FLAG_KEY_KEY,
    FEATURE_FLAG_PROVIDER_NAME_KEY,
    FEATURE_FLAG_REASON_KEY,
    FEATURE_FLAG_VARIANT_KEY,
    Attribute,
    exception_type,
    feature_flag_reason,
    semconv_feature_flag_attributes,
)


@pytest.mark.parametrize(
    "key, variant",
    [
        ("flagA", "bool"),
        ("flagB", ""),
        ("", ""),
    ],
    ids=["simple flag", "empty variant flag", "empty key and variant"],
)
def test_semconv_feature_flag_attributes(key, variant):
    attributes = semconv_feature_flag_attributes(key, variant)
    expected = {
        FEATURE_FLAG_KEY_KEY: key,
        FEATURE_FLAG_VARIANT_KEY: variant,
        FEATURE_FLAG_PROVIDER_NAME_KEY: "flagd",
    }
    assert len(attributes) == 3
    for attribute in attributes:
        assert attribute.key in expected, f"unexpected attribute {attribute.key}"
        assert attribute.value == expected[attribute.key]


def test_semconv_feature_flag_attributes_order():
    assert semconv_feature_flag_attributes("k", "v") == [
        Attribute("feature_flag.key", "k"),
        Attribute("feature_flag.variant", "v"),
        Attribute("feature_flag.provider_name", "flagd"),
    ]


def test_feature_flag_reason():
    assert feature_flag_reason("STATIC") == Attribute(FEATURE_FLAG_REASON_KEY, "STATIC")
    assert FEATURE_FLAG_REASON_KEY == "feature_flag.reason"


def test_exception_type():
    assert exception_type("not found") == Attribute(EXCEPTION_TYPE_KEY, "not found")
    assert EXCEPTION_TYPE_KEY == "ExceptionTypeKeyName"


def test_attributes_are_hashable_and_comparable():
    assert {Attribute("a", "1"), Attribute("a", "1")} == {Attribute("a", "1")}