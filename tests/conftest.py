from types import SimpleNamespace

import pytest

from notify_dispatch.config import DispatchSettings
from notify_dispatch.entities import EntityGateway, FieldDefinition
from notify_dispatch.store import SqlMessageStore, SqlSubscriptionStore, create_session_factory


NODE_FIELDS = [
    FieldDefinition("tags", "category_reference", multiple=True),
    FieldDefinition("section", "entity_reference", target_type="taxonomy_term"),
    FieldDefinition("related", "entity_reference", target_type="node"),
    FieldDefinition("body", "text"),
]


class FakeGateway(EntityGateway):
    def __init__(self, entities=None, denied=None, groups=None):
        self.entities = {}
        for entity_type, items in (entities or {}).items():
            for item in items:
                self.entities[(entity_type, item.id)] = item
        self.denied = set(denied or [])
        self.groups = groups
        self.loads = []

    def load(self, entity_type, entity_id):
        self.loads.append((entity_type, entity_id))
        return self.entities.get((entity_type, entity_id))

    def can_view(self, user_id, entity_type, entity):
        return user_id not in self.denied

    def field_definitions(self, entity_type, entity):
        return NODE_FIELDS if entity_type == "node" else []

    def group_memberships(self, entity_type, entity):
        if self.groups is None:
            return None
        return self.groups.get(entity.id, {})


class RecordingNotifier:
    def __init__(self, name, result=True):
        self.name = name
        self.result = result
        self.sent = []

    def deliver(self, message):
        self.sent.append(message)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class RecordingInvoker:
    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    def invoke(self, message, options, channel):
        self.calls.append((message.user_id, channel, message))
        return self.results.get(channel, True)


class ListQueue:
    def __init__(self):
        self.tasks = []

    def enqueue(self, task):
        self.tasks.append(task)


class StaticProvider:
    def __init__(self, candidates):
        self.candidates = candidates
        self.calls = []

    def provide(self, message, options, context):
        self.calls.append((options, context))
        return {user_id: dict(value) for user_id, value in self.candidates.items()}


def node(node_id=1, owner=1, **extra):
    return SimpleNamespace(id=node_id, user_id=owner, **extra)


@pytest.fixture
def settings():
    return DispatchSettings(default_notifiers=("email",))


@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'notify.db'}")


@pytest.fixture
def message_store(session_factory):
    return SqlMessageStore(session_factory)


@pytest.fixture
def subscription_store(session_factory):
    return SqlSubscriptionStore(session_factory)
