import pytest

from awsprovider.errors import InvalidFormatError
from awsprovider.providerid import (
    ProviderID,
    format_provider_id,
    is_valid_provider_id,
    parse_provider_id,
    region_from_zone,
)


def test_parse_canonical():
    p = parse_provider_id("aws:///us-east-1a/i-0123456789abcdef0")
    assert p.region == "us-east-1"
    assert p.availability_zone == "us-east-1a"
    assert p.instance_id == "i-0123456789abcdef0"


@pytest.mark.parametrize("s", [
    "aws:///us-east-1a/i-0123456789abcdef0",
    "aws:///eu-central-1c/i-1",
    "aws://us-west-2b/i-2",
    "aws://prefix/path/ap-south-1a/i-3",
    "custom:///zone/id",
    "aws:///a/b",
])
def test_format_parse_round_trip(s):
    assert str(parse_provider_id(s)) == s


@pytest.mark.parametrize("s", [
    "",
    "us-east-1a/i-1",
    "aws:/us-east-1a/i-1",
    "aws:///us-east-1a/i-1/",
    "aws:///us-east-1a/",
    "aws://i-1",
    "aws:////i-1",
    "://us-east-1a/i-1",
])
def test_malformed_strings_are_rejected(s):
    with pytest.raises(InvalidFormatError):
        parse_provider_id(s)
    assert not is_valid_provider_id(s)


def test_invalid_format_is_a_value_error():
    with pytest.raises(ValueError):
        parse_provider_id("nope")


def test_format_canonical():
    assert format_provider_id("us-east-1", "us-east-1a", "i-1") == "aws:///us-east-1a/i-1"
    assert str(ProviderID("us-east-1", "us-east-1a", "i-1")) == "aws:///us-east-1a/i-1"


@pytest.mark.parametrize("args", [
    ("", "us-east-1a", "i-1"),
    ("us-east-1", "", "i-1"),
    ("us-east-1", "us-east-1a", ""),
])
def test_format_rejects_empty_fields(args):
    with pytest.raises(ValueError):
        format_provider_id(*args)


def test_region_from_zone():
    assert region_from_zone("us-east-1a") == "us-east-1"
    assert region_from_zone("us-gov-west-1b") == "us-gov-west-1"
    assert region_from_zone("us-east-1") == "us-east-1"
