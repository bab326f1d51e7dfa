"""Shared fixtures: a ticket-create field registry and a fixed clock."""

from datetime import datetime, timezone

import pytest

from formweave.config import EvaluationConfig
from formweave.dates import DateValueResolver
from formweave.registry import FieldDescriptor, FieldRegistry
from formweave.store import FormStateStore
from formweave.types import Actor, ActorKind, FieldType, MergeRole

NOW = datetime(2024, 1, 31, 10, 15, 42, 123456, tzinfo=timezone.utc)


def ticket_fields():
    return [
        FieldDescriptor(name="title", type=FieldType.TEXT, role=MergeRole.ALWAYS_OVERWRITE, max_length=250),
        FieldDescriptor(name="body", type=FieldType.FREEFORM, object="article"),
        FieldDescriptor(name="cc", type=FieldType.TEXT, object="article"),
        FieldDescriptor(name="customer_id", type=FieldType.SELECT),
        FieldDescriptor(name="group_id", type=FieldType.SELECT, permission_gated=True),
        FieldDescriptor(name="owner_id", type=FieldType.SELECT, permission_gated=True),
        FieldDescriptor(name="state_id", type=FieldType.SELECT, options=["1", "2", "3", "7"], default="2"),
        FieldDescriptor(name="priority_id", type=FieldType.SELECT, options=["1", "2", "3"], default="2"),
        FieldDescriptor(name="form_sender_type", type=FieldType.SELECT, options=["phone-out", "email-out"]),
        FieldDescriptor(name="tags", type=FieldType.TAG_LIST),
        FieldDescriptor(name="pending_time", type=FieldType.DATETIME),
        FieldDescriptor(name="category", type=FieldType.TREE_SELECT, options=["Incident", "Service request", "Change request"]),
        FieldDescriptor(name="products", type=FieldType.MULTI_TREE_SELECT, options=["Incident", "Service request", "Change request"]),
        FieldDescriptor(name="maxtest", type=FieldType.TEXT, max_length=3),
        FieldDescriptor(name="due_date", type=FieldType.DATE),
    ]


@pytest.fixture
def registry():
    return FieldRegistry(ticket_fields())


@pytest.fixture
def store(registry):
    return FormStateStore(registry, {"state_id": "2", "priority_id": "2"})


@pytest.fixture
def config():
    return EvaluationConfig()


@pytest.fixture
def dates():
    return DateValueResolver(timezone.utc)


@pytest.fixture
def agent():
    return Actor(kind=ActorKind.AGENT, id="agent_1", name="Agent One")


@pytest.fixture
def clock():
    return lambda: NOW
