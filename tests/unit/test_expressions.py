"""Tests for attribute expressions."""

import pytest

from stratum.expressions import (
    Reference,
    Symbol,
    Template,
    lookup_path,
    parse_string,
    parse_symbol,
    parse_value,
    resolve,
    to_text,
)
from stratum.models import UNKNOWN, Address

VPC = Address("aws_vpc", "main")


class TestParse:
    """Tests for parsing ${...} interpolations."""

    def test_plain_string_is_literal(self):
        assert parse_string("10.0.0.0/16") == "10.0.0.0/16"

    def test_single_interpolation_keeps_type(self):
        """A string that is exactly one interpolation parses to the bare Symbol."""
        value = parse_string("${var.cidr}")
        assert isinstance(value, Symbol)
        assert value.segments == ("var", "cidr")

    def test_mixed_string_is_template(self):
        value = parse_string("arn:${var.partition}:iam")
        assert isinstance(value, Template)
        assert value.parts[0] == "arn:"
        assert isinstance(value.parts[1], Symbol)
        assert value.parts[2] == ":iam"

    def test_escaped_interpolation(self):
        assert parse_string("$${not.a.ref}") == "${not.a.ref}"

    def test_index_segments(self):
        symbol = parse_symbol("module.net.subnet_ids[0]")
        assert symbol.segments == ("module", "net", "subnet_ids", 0)

    @pytest.mark.parametrize("text", ["", "0abc.x", "a..b", "a.[x]"])
    def test_invalid_syntax(self, text):
        with pytest.raises(ValueError):
            parse_symbol(text)

    def test_parse_value_recurses(self):
        value = parse_value({"tags": ["${var.env}", "static"], "count": 3})
        assert isinstance(value["tags"][0], Symbol)
        assert value["tags"][1] == "static"
        assert value["count"] == 3


class TestResolve:
    """Tests for resolving references against known values."""

    def test_bare_reference(self):
        value = {"vpc_id": Reference(VPC, ("id",))}
        assert resolve(value, lambda ref: "vpc-123") == {"vpc_id": "vpc-123"}

    def test_template_renders_to_string(self):
        value = Template(("subnet-", Reference(VPC, ("id",)), "-a"))
        assert resolve(value, lambda ref: 42) == "subnet-42-a"

    def test_template_renders_collections_as_json(self):
        value = Template(("ids=", Reference(VPC, ("ids",))))
        assert resolve(value, lambda ref: ["a", "b"]) == 'ids=["a", "b"]'

    def test_unknown_propagates_through_template(self):
        value = Template(("prefix-", Reference(VPC, ("id",))))
        assert resolve(value, lambda ref: UNKNOWN) is UNKNOWN

    def test_lookup_path(self):
        value = {"subnets": [{"id": "a"}, {"id": "b"}]}
        assert lookup_path(value, ("subnets", 1, "id")) == "b"

    def test_lookup_path_missing(self):
        with pytest.raises(KeyError):
            lookup_path({"subnets": []}, ("subnets", 0))

    def test_lookup_through_unknown(self):
        assert lookup_path({"a": UNKNOWN}, ("a", "b", 0)) is UNKNOWN

    def test_to_text(self):
        value = {"id": Reference(VPC, ("id",)), "name": Template(("x-", Reference(VPC, ())))}
        assert to_text(value) == {"id": "${aws_vpc.main.id}", "name": "x-${aws_vpc.main}"}
