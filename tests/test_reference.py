# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for wfs_ets.reference: the in-process WFS used by the self-tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from wfs_ets._xml import qn
from wfs_ets.builder import ActionKind, QueryExpression, RequestBuilder, RequestParams, TransactionAction
from wfs_ets.capabilities import TypeName
from wfs_ets.clock import SimulatedClock
from wfs_ets.dispatch import ResponseRecord, normalize
from wfs_ets.protocol import SOAP11_NS, Binding, ExceptionCode, Operation
from wfs_ets.reference import REFERENCE_NS, default_store
from wfs_ets.reference._parse import QuerySpec, TxAction, WfsError
from wfs_ets.validate import feature_ids

if TYPE_CHECKING:
    import httpx

    from tests.conftest import ReferenceService

ROAD = TypeName(REFERENCE_NS, "Road", "tns")
_PREFIXES = {"tns": REFERENCE_NS}


def _record(response: httpx.Response, binding: Binding = Binding.GET) -> ResponseRecord:
    return normalize(response.status_code, response.content, response.headers, binding)


def _roads(*ids: str) -> QuerySpec:
    return QuerySpec(type_names=("tns:Road",), resource_ids=ids, prefixes=_PREFIXES)


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------


class TestHttp:
    """Encodings, error documents and status codes."""

    def test_capabilities(self, service: ReferenceService) -> None:
        """GetCapabilities answers with XML."""
        response = service.client.get("/wfs", params={"SERVICE": "WFS", "REQUEST": "GetCapabilities"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert _record(response).root_name == qn("wfs", "WFS_Capabilities")

    def test_missing_request(self, service: ReferenceService) -> None:
        """A query string without REQUEST is refused."""
        record = _record(service.client.get("/wfs", params={"SERVICE": "WFS"}))
        assert record.status == 400
        assert record.exception_code == ExceptionCode.MISSING_PARAMETER_VALUE
        assert record.exception_locator == "request"

    @pytest.mark.parametrize("request_name", ["Transaction", "CreateStoredQuery", "Frobnicate"])
    def test_not_supported_over_get(self, service: ReferenceService, request_name: str) -> None:
        """POST-only and unknown operations answer 501."""
        record = _record(service.client.get("/wfs", params={"SERVICE": "WFS", "REQUEST": request_name}))
        assert record.status == 501
        assert record.exception_code == "OperationNotSupported"

    def test_wrong_version(self, service: ReferenceService) -> None:
        """Only 2.0.x requests are served."""
        params = {"SERVICE": "WFS", "VERSION": "1.1.0", "REQUEST": "GetFeature", "TYPENAMES": "Road"}
        record = _record(service.client.get("/wfs", params=params))
        assert record.exception_code == ExceptionCode.INVALID_PARAMETER_VALUE
        assert record.exception_locator == "version"

    @pytest.mark.parametrize("body", [b"<wfs:GetFeature", b'<html xmlns="http://www.w3.org/1999/xhtml"/>'])
    def test_unparseable_post(self, service: ReferenceService, body: bytes) -> None:
        """Malformed or foreign entities are parsing failures."""
        record = _record(service.client.post("/wfs", content=body), Binding.POST)
        assert record.status == 400
        assert record.exception_code == ExceptionCode.OPERATION_PARSING_FAILED

    def test_soap11_fault(self, service: ReferenceService) -> None:
        """SOAP 1.1 faults keep the exception status and content type."""
        body = (
            f'<s:Envelope xmlns:s="{SOAP11_NS}"><s:Body>'
            '<wfs:LockFeature xmlns:wfs="http://www.opengis.net/wfs/2.0" service="WFS" version="2.0.2"'
            ' lockId="lock-4242" expiry="5"/></s:Body></s:Envelope>'
        ).encode()
        response = service.client.post("/wfs", content=body, headers={"Content-Type": "text/xml"})
        assert response.status_code == 403
        assert response.headers["content-type"].startswith("text/xml")
        record = _record(response, Binding.SOAP)
        assert record.exception_code == ExceptionCode.LOCK_HAS_EXPIRED

    def test_cursor_only_request(self, service: ReferenceService) -> None:
        """A bare CURSOR parameter is a GetFeature continuation."""
        record = _record(service.client.get("/wfs", params={"CURSOR": "cursor-9999"}))
        assert record.exception_code == ExceptionCode.INVALID_PARAMETER_VALUE
        assert record.exception_locator == "cursor"


# ---------------------------------------------------------------------------
# Operations through the builder
# ---------------------------------------------------------------------------


class TestOperations:
    """Operation semantics exercised through built requests."""

    @pytest.mark.parametrize("binding", [Binding.GET, Binding.POST])
    def test_bbox_axis_order(self, service: ReferenceService, binding: Binding) -> None:
        """Builder and service agree on latitude-first envelopes."""
        caps = service.capabilities()
        query = QueryExpression(type_names=(ROAD,), bbox=(4.87, 52.365, 4.92, 52.39))
        payload = RequestBuilder(caps).build(Operation.GET_FEATURE, RequestParams(queries=(query,)))
        record = service.dispatcher(caps).dispatch(payload, binding)
        assert record.root is not None
        assert feature_ids(record.root) == ["road.1"]

    def test_sort_by(self, service: ReferenceService) -> None:
        """Results follow the requested ordering."""
        caps = service.capabilities()
        query = QueryExpression(type_names=(ROAD,), sort_by=("name",))
        payload = RequestBuilder(caps).build(Operation.GET_FEATURE, RequestParams(queries=(query,)))
        record = service.dispatcher(caps).dispatch(payload, Binding.GET)
        assert record.root is not None
        assert feature_ids(record.root) == ["road.2", "road.4", "road.1", "road.5", "road.3"]

    def test_property_value(self, service: ReferenceService) -> None:
        """GetPropertyValue returns one member per feature."""
        caps = service.capabilities()
        params = RequestParams(queries=(QueryExpression(type_names=(ROAD,)),), value_reference="lanes")
        record = service.dispatcher(caps).dispatch(RequestBuilder(caps).build(Operation.GET_PROPERTY_VALUE, params))
        assert record.root_name == qn("wfs", "ValueCollection")
        assert [m.text for m in record.root.findall(qn("wfs", "member"))] == ["2", "1", "4", "2", "1"]  # type: ignore[union-attr]

    def test_describe_feature_type(self, service: ReferenceService) -> None:
        """The schema declares the requested type."""
        caps = service.capabilities()
        payload = RequestBuilder(caps).build(Operation.DESCRIBE_FEATURE_TYPE, RequestParams(type_names=(ROAD,)))
        record = service.dispatcher(caps).dispatch(payload, Binding.GET)
        assert record.root_name == "{http://www.w3.org/2001/XMLSchema}schema"
        assert [e.get("name") for e in record.root.findall("{http://www.w3.org/2001/XMLSchema}element")] == ["Road"]  # type: ignore[union-attr]

    def test_transaction(self, service: ReferenceService) -> None:
        """Insert, update and delete round through the store."""
        caps = service.capabilities()
        builder = RequestBuilder(caps)
        dispatcher = service.dispatcher(caps)
        insert = TransactionAction(ActionKind.INSERT, ROAD, ("road.9",), {"name": "New Road", "lanes": "3"})
        record = dispatcher.dispatch(builder.build(Operation.TRANSACTION, RequestParams(actions=(insert,))))
        assert record.ok
        assert record.root is not None
        assert record.root.findtext(f"{qn('wfs', 'TransactionSummary')}/{qn('wfs', 'totalInserted')}") == "1"

        update = TransactionAction(ActionKind.UPDATE, ROAD, ("road.9",), {"lanes": "4"})
        delete = TransactionAction(ActionKind.DELETE, ROAD, ("road.1",))
        record = dispatcher.dispatch(builder.build(Operation.TRANSACTION, RequestParams(actions=(update, delete))))
        assert record.ok
        summary = record.root.find(qn("wfs", "TransactionSummary"))  # type: ignore[union-attr]
        assert summary is not None
        assert summary.findtext(qn("wfs", "totalUpdated")) == "1"
        assert summary.findtext(qn("wfs", "totalDeleted")) == "1"

        query = QueryExpression(type_names=(ROAD,))
        record = dispatcher.dispatch(builder.build(Operation.GET_FEATURE, RequestParams(queries=(query,))))
        assert record.root is not None
        assert feature_ids(record.root) == ["road.2", "road.3", "road.4", "road.5", "road.9"]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TestStore:
    """FeatureStore rules applied directly."""

    def test_lock_expiry(self) -> None:
        """A lock past its expiry is gone."""
        clock = SimulatedClock(start=0.0)
        store = default_store(clock)
        result = store.lock([_roads("road.1")], 10, "ALL")
        assert result.lock_id == "lock-0001"
        clock.advance(11)
        with pytest.raises(WfsError) as exc_info:
            store.lock([], 10, "ALL", result.lock_id)
        assert exc_info.value.code == ExceptionCode.LOCK_HAS_EXPIRED
        assert exc_info.value.status == 403

    def test_release_some(self) -> None:
        """releaseAction=SOME keeps the untouched features locked."""
        store = default_store(SimulatedClock())
        lock = store.lock([_roads("road.1", "road.2")], 60, "ALL")
        update = TxAction("Update", "tns:Road", ("road.1",), {"lanes": "9"})
        store.transaction([update], lock.lock_id, "SOME", _PREFIXES)
        assert store.lock([], 60, "ALL", lock.lock_id).locked == ["road.2"]

    def test_release_all(self) -> None:
        """releaseAction=ALL releases the whole lock."""
        store = default_store(SimulatedClock())
        lock = store.lock([_roads("road.1", "road.2")], 60, "ALL")
        store.transaction([TxAction("Delete", "tns:Road", ("road.1",))], lock.lock_id, "ALL", _PREFIXES)
        with pytest.raises(WfsError):
            store.lock([], 60, "ALL", lock.lock_id)

    def test_transaction_is_atomic(self) -> None:
        """A failing action leaves earlier actions unapplied."""
        store = default_store(SimulatedClock())
        actions = [TxAction("Delete", "tns:Road", ("road.1",)), TxAction("Delete", "tns:Road", ("road.99",))]
        with pytest.raises(WfsError) as exc_info:
            store.transaction(actions, None, "ALL", _PREFIXES)
        assert exc_info.value.locator == "filter"
        assert "road.1" in store.features

    def test_unknown_property(self) -> None:
        """Writing an undeclared property is refused."""
        store = default_store(SimulatedClock())
        with pytest.raises(WfsError) as exc_info:
            store.transaction([TxAction("Update", "tns:Road", ("road.1",), {"colour": "red"})], None, "ALL", _PREFIXES)
        assert exc_info.value.locator == "colour"

    def test_locked_by_another_lock(self) -> None:
        """Presenting a different lock id does not unlock a feature."""
        store = default_store(SimulatedClock())
        store.lock([_roads("road.1")], 60, "ALL")
        other = store.lock([_roads("road.2")], 60, "ALL")
        with pytest.raises(WfsError) as exc_info:
            store.transaction([TxAction("Delete", "tns:Road", ("road.1",))], other.lock_id, "ALL", _PREFIXES)
        assert exc_info.value.code == ExceptionCode.INVALID_PARAMETER_VALUE
        assert exc_info.value.locator == "lockId"

    def test_some_on_fully_locked_type(self) -> None:
        """A SOME request over locked features grants an empty lock."""
        store = default_store(SimulatedClock())
        store.lock([_roads("road.1")], 60, "ALL")
        result = store.lock([_roads("road.1")], 60, "SOME")
        assert result.locked == []
        assert result.not_locked == ["road.1"]

    def test_unbound_prefix_falls_back_to_local_name(self) -> None:
        """A type name with an unknown prefix resolves by unique local name."""
        store = default_store(SimulatedClock())
        assert store.resolve_type("Road", {}) == ROAD
        with pytest.raises(WfsError):
            store.resolve_type("Canal", {})
