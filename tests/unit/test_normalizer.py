"""Tests for remote shipment normalization (no DB needed)."""
import json

import pytest

from yardsync.remote.normalizer import (
    normalize_consignee,
    normalize_packages,
    normalize_shipment,
    shipment_id,
)
from yardsync.sync.errors import MappingError

SHIPMENT = {
    "shipment_id": "SH-2001",
    "reference_number": "REF-88",
    "tracking_number": "1Z999",
    "status": "in_warehouse",
    "warehouse_location": "Miami A3",
    "description": "Laptop",
    "weight": "2.25",
    "dimensions": "40x30x10",
    "value": "899.99",
    "sender": {"name": "Acme Supplies", "address": "1 Port Blvd, Miami"},
    "receiver": {
        "id": "CUST-7",
        "name": "  Maria Lopez ",
        "address": "12 Harbour Rd, Kingston",
        "email": "maria@example.com",
        "phone": "+1 876 555 0100",
    },
}


class TestShipmentId:
    def test_prefers_shipment_id(self):
        assert shipment_id({"shipment_id": "A", "id": "B"}) == "A"

    def test_falls_back_to_id(self):
        assert shipment_id({"id": 42}) == "42"

    def test_missing(self):
        assert shipment_id({}) is None


class TestNormalizeConsignee:
    def test_maps_receiver_fields(self):
        parent = normalize_consignee(SHIPMENT)
        assert parent == {
            "external_id": "CUST-7",
            "full_name": "Maria Lopez",
            "address": "12 Harbour Rd, Kingston",
            "email": "maria@example.com",
            "phone_number": "+1 876 555 0100",
        }

    def test_consignee_key_accepted(self):
        raw = {"shipment_id": "X", "consignee": {"name": "Ann Smith"}}
        parent = normalize_consignee(raw)
        assert parent["full_name"] == "Ann Smith"
        assert parent["external_id"] is None
        assert parent["address"] is None

    def test_missing_name_raises_with_shipment_id(self):
        with pytest.raises(MappingError) as excinfo:
            normalize_consignee({"shipment_id": "SH-9", "receiver": {"name": "   "}})
        assert excinfo.value.external_id == "SH-9"

    def test_non_object_receiver_raises(self):
        with pytest.raises(MappingError):
            normalize_consignee({"shipment_id": "SH-9", "receiver": "Maria"})


class TestNormalizePackages:
    def test_single_shipment_is_one_package(self):
        packages = normalize_packages(SHIPMENT)
        assert len(packages) == 1
        pkg = packages[0]
        assert pkg["external_id"] == "SH-2001"
        assert pkg["tracking_number"] == "1Z999"
        assert pkg["weight"] == 2.25
        assert pkg["package_value"] == pytest.approx(899.99)
        assert pkg["dimensions"] == "40x30x10"
        assert pkg["consolidation_status"] == "in_warehouse"
        assert pkg["remote_reference_number"] == "REF-88"
        assert pkg["sender_name"] == "Acme Supplies"
        assert pkg["delivery_address"] == "12 Harbour Rd, Kingston"

    def test_raw_payload_kept(self):
        pkg = normalize_packages(SHIPMENT)[0]
        assert json.loads(pkg["raw_remote_json"])["shipment_id"] == "SH-2001"

    def test_declared_value_alias(self):
        raw = dict(SHIPMENT, value=None, declared_value=50)
        raw.pop("value")
        assert normalize_packages(raw)[0]["package_value"] == 50.0

    def test_items_become_separate_packages(self):
        raw = dict(SHIPMENT, items=[
            {"id": "IT-1", "tracking_number": "T1", "weight": 1},
            {"description": "Charger"},
        ])
        packages = normalize_packages(raw)
        assert [p["external_id"] for p in packages] == ["IT-1", "SH-2001-1"]
        assert packages[0]["tracking_number"] == "T1"
        # Items inherit the shipment's tracking number and description when they have none
        assert packages[1]["tracking_number"] == "1Z999"
        assert packages[1]["description"] == "Charger"
        assert packages[0]["description"] == "Laptop"
        assert packages[1]["warehouse_location"] == "Miami A3"

    def test_reference_number_used_when_no_tracking(self):
        raw = dict(SHIPMENT)
        raw.pop("tracking_number")
        assert normalize_packages(raw)[0]["tracking_number"] == "REF-88"

    def test_missing_shipment_id_raises(self):
        raw = dict(SHIPMENT)
        raw.pop("shipment_id")
        with pytest.raises(MappingError, match="shipment_id"):
            normalize_packages(raw)

    def test_missing_tracking_and_reference_raises(self):
        raw = dict(SHIPMENT)
        raw.pop("tracking_number")
        raw.pop("reference_number")
        with pytest.raises(MappingError):
            normalize_packages(raw)

    def test_non_numeric_weight_raises(self):
        with pytest.raises(MappingError, match="weight"):
            normalize_packages(dict(SHIPMENT, weight="heavy"))

    def test_blank_numeric_is_none(self):
        assert normalize_packages(dict(SHIPMENT, weight=""))[0]["weight"] is None


class TestNormalizeShipment:
    def test_returns_parent_and_children(self):
        parent, children = normalize_shipment(SHIPMENT)
        assert parent["full_name"] == "Maria Lopez"
        assert len(children) == 1

    def test_non_dict_raises(self):
        with pytest.raises(MappingError, match="not an object"):
            normalize_shipment(["SH-1"])
