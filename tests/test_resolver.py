"""Unit tests for resolver.py - Desired-state resolution."""

from datetime import timedelta

import pytest

from conditions import ConditionStatus, ConditionType
from conftest import PROJECT, SINK_URL, TOPIC, FakeAddressResolver, source_spec
from events import Reason, ReconcileError
from models import Destination, ObjectReference, PubSubSource, SourceSpec, SourceStatus
from plugins.resolvers.base import ReferenceNotFound
from resolver import (
    CLASS_ANNOTATION,
    COOLDOWN_ANNOTATION,
    DEFAULT_ACK_DEADLINE,
    DEFAULT_RETENTION_DURATION,
    MAX_SCALE_ANNOTATION,
    MIN_SCALE_ANNOTATION,
    QUEUE_DEPTH_ANNOTATION,
    DesiredStateResolver,
    duration_or_default,
    parse_duration,
    parse_scaling,
)


def make_source(annotations=None, **spec_overrides) -> PubSubSource:
    return PubSubSource(
        namespace="default",
        name="orders",
        uid="uid-1",
        spec=SourceSpec.from_dict(source_spec(**spec_overrides)),
        annotations=annotations or {},
    )


def new_status() -> SourceStatus:
    status = SourceStatus()
    status.conditions.initialize()
    return status


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("7d", timedelta(days=7)),
            ("1.5h", timedelta(minutes=90)),
            ("500ms", timedelta(milliseconds=500)),
            ("0", timedelta(0)),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", "10", "-5s", "5x", "s"])
    def test_invalid(self, value):
        assert parse_duration(value) is None

    def test_default_on_garbage(self):
        assert duration_or_default("soon", DEFAULT_ACK_DEADLINE) == DEFAULT_ACK_DEADLINE


class TestParseScaling:
    def test_defaults_are_static(self):
        scaling = parse_scaling({})
        assert not scaling.elastic
        assert scaling.min_scale == 0
        assert scaling.max_scale == 1
        assert scaling.static_replicas == 1

    def test_elastic_annotations(self):
        scaling = parse_scaling(
            {
                CLASS_ANNOTATION: "elastic",
                MIN_SCALE_ANNOTATION: "2",
                MAX_SCALE_ANNOTATION: "10",
                QUEUE_DEPTH_ANNOTATION: "50",
                COOLDOWN_ANNOTATION: "60",
            }
        )
        assert scaling.elastic
        assert (scaling.min_scale, scaling.max_scale) == (2, 10)
        assert scaling.queue_depth_target == 50
        assert scaling.cooldown_period == 60

    def test_unknown_class_is_static(self):
        assert not parse_scaling({CLASS_ANNOTATION: "turbo"}).elastic

    def test_bad_integers_fall_back(self):
        scaling = parse_scaling({MIN_SCALE_ANNOTATION: "lots", MAX_SCALE_ANNOTATION: "-3"})
        assert scaling.min_scale == 0
        assert scaling.max_scale == 1

    def test_max_raised_to_min(self):
        scaling = parse_scaling({MIN_SCALE_ANNOTATION: "5", MAX_SCALE_ANNOTATION: "2"})
        assert scaling.max_scale == 5
        assert scaling.static_replicas == 5


@pytest.mark.asyncio
class TestDesiredStateResolver:
    @pytest.fixture
    def resolver(self, address_resolver):
        return DesiredStateResolver(address_resolver, default_project="fallback")

    async def test_happy_path(self, resolver):
        status = new_status()
        desired = await resolver.resolve(make_source(), status)

        assert desired.project_id == PROJECT
        assert desired.topic == TOPIC
        assert desired.sink_uri == SINK_URL
        assert desired.transformer_uri is None
        assert desired.subscription.ack_deadline == DEFAULT_ACK_DEADLINE
        assert desired.subscription.retention_duration == DEFAULT_RETENTION_DURATION
        assert status.sink_uri == SINK_URL
        assert status.conditions.get(ConditionType.SINK_RESOLVED).is_true()
        transformer = status.conditions.get(ConditionType.TRANSFORMER_RESOLVED)
        assert transformer.is_true()
        assert transformer.reason == "TransformerNil"

    async def test_default_project(self, resolver):
        status = new_status()
        desired = await resolver.resolve(make_source(project=""), status)
        assert desired.project_id == "fallback"
        assert status.project_id == "fallback"

    async def test_missing_sink_marks_invalid(self, resolver):
        status = new_status()
        status.sink_uri = "http://stale"
        source = make_source(sink={"ref": {"kind": "Service", "name": "missing"}})

        with pytest.raises(ReconcileError) as exc_info:
            await resolver.resolve(source, status)

        assert exc_info.value.reason == Reason.INVALID_SINK
        assert status.sink_uri is None
        cond = status.conditions.get(ConditionType.SINK_RESOLVED)
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == "InvalidSink"
        assert cond.message.startswith("Failed to resolve sink: ")
        assert status.conditions.get(ConditionType.READY).reason == "InvalidSink"

    async def test_transformer_not_ready(self):
        resolver = DesiredStateResolver(
            FakeAddressResolver({"sink": SINK_URL, "fn": None})
        )
        status = new_status()
        source = make_source(transformer={"ref": {"kind": "Service", "name": "fn"}})

        with pytest.raises(ReconcileError) as exc_info:
            await resolver.resolve(source, status)

        assert exc_info.value.reason == Reason.INVALID_TRANSFORMER
        assert status.conditions.get(ConditionType.SINK_RESOLVED).is_true()
        assert status.conditions.get(ConditionType.TRANSFORMER_RESOLVED).is_false()

    async def test_sink_lookup_error_marks_invalid(self):
        resolver = DesiredStateResolver(
            FakeAddressResolver({"sink": RuntimeError("apiserver 503")})
        )
        status = new_status()

        with pytest.raises(ReconcileError) as exc_info:
            await resolver.resolve(make_source(), status)

        assert exc_info.value.reason == Reason.INVALID_SINK
        assert exc_info.value.message == "Failed to resolve sink: apiserver 503"
        cond = status.conditions.get(ConditionType.SINK_RESOLVED)
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == "InvalidSink"

    async def test_transformer_lookup_error_marks_invalid(self):
        resolver = DesiredStateResolver(
            FakeAddressResolver({"sink": SINK_URL, "fn": PermissionError("forbidden")})
        )
        status = new_status()
        source = make_source(transformer={"ref": {"kind": "Service", "name": "fn"}})

        with pytest.raises(ReconcileError) as exc_info:
            await resolver.resolve(source, status)

        assert exc_info.value.reason == Reason.INVALID_TRANSFORMER
        cond = status.conditions.get(ConditionType.TRANSFORMER_RESOLVED)
        assert cond.reason == "InvalidTransformer"
        assert "forbidden" in cond.message

    async def test_sub_second_ack_deadline_truncated(self, resolver):
        desired = await resolver.resolve(make_source(ackDeadline="1500ms"), new_status())
        assert desired.subscription.ack_deadline == timedelta(seconds=1)

    async def test_durations_from_spec(self, resolver):
        desired = await resolver.resolve(
            make_source(ackDeadline="1m", retentionDuration="1h", retainAckedMessages=True),
            new_status(),
        )
        assert desired.subscription.ack_deadline == timedelta(minutes=1)
        assert desired.subscription.retention_duration == timedelta(hours=1)
        assert desired.subscription.retain_acked_messages is True

    async def test_uri_only_destination(self, resolver):
        uri = await resolver.resolve_destination(Destination(uri="https://x.example/e"), "ns")
        assert uri == "https://x.example/e"

    async def test_relative_uri_without_ref_fails(self, resolver):
        with pytest.raises(ReferenceNotFound):
            await resolver.resolve_destination(Destination(uri="/path"), "ns")

    async def test_ref_plus_relative_uri(self, resolver):
        dest = Destination(ref=ObjectReference("Service", "sink"), uri="extra/path")
        uri = await resolver.resolve_destination(dest, "default")
        assert uri == SINK_URL + "/extra/path"
