import pytest

from conftest import FakeGateway, ListQueue, RecordingInvoker, StaticProvider, node

from notify_dispatch.config import DispatchSettings
from notify_dispatch.engine import DispatchEngine
from notify_dispatch.errors import InvalidStateError
from notify_dispatch.models import ChannelOptions, DispatchOptions, Message, SubscriptionRecord
from notify_dispatch.providers import FlagSubscriptionProvider
from notify_dispatch.resolver import SubscriberResolver
from notify_dispatch.worker import QueueWorker


DOC = node(1, owner=1)


def build_engine(message_store, *providers, queue=None, clock=None, invoker=None, settings=None):
    gateway = FakeGateway({"node": [DOC]})
    settings = settings or DispatchSettings(default_notifiers=("email",))
    resolver = SubscriberResolver(gateway, settings, providers=providers)
    kwargs = {"clock": clock} if clock else {}
    engine = DispatchEngine(
        resolver,
        invoker or RecordingInvoker(),
        settings,
        message_store=message_store,
        queue=queue,
        **kwargs,
    )
    return engine, gateway


def test_sync_send_delivers_clones_to_every_subscriber(message_store):
    provider = StaticProvider({3: {"notifiers": ["discord"]}, 2: {}})
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, provider, invoker=invoker)
    message = Message(user_id=1, subject="Updated")

    returned = engine.send("node", DOC, message)

    assert returned is message
    assert message.id is not None
    assert message.user_id == 1
    assert [(uid, channel) for uid, channel, _ in invoker.calls] == [(2, "email"), (3, "discord"), (3, "email")]
    for user_id, _, clone in invoker.calls:
        assert clone.id is None
        assert clone.user_id == user_id
        assert clone.original is message
        assert clone.delivery_state["entity_id"] == 1
    assert message_store.load(message.id).subject == "Updated"


def test_unsaved_message_is_not_persisted_when_save_disabled(message_store):
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, StaticProvider({2: {}}), invoker=invoker)
    message = Message(user_id=1)

    engine.send("node", DOC, message, options=DispatchOptions(save_message=False))

    assert message.id is None
    assert len(invoker.calls) == 1


def test_queueing_unsaved_message_fails(message_store):
    queue = ListQueue()
    engine, _ = build_engine(message_store, StaticProvider({2: {}}), queue=queue)

    with pytest.raises(InvalidStateError):
        engine.send("node", DOC, Message(user_id=1), options=DispatchOptions(use_queue=True, save_message=False))
    assert queue.tasks == []


def test_queued_send_creates_single_task_without_delivering(message_store):
    queue = ListQueue()
    invoker = RecordingInvoker()
    provider = StaticProvider({2: {}})
    engine, _ = build_engine(message_store, provider, queue=queue, invoker=invoker)
    message = Message(user_id=1)

    engine.send(
        "node",
        DOC,
        message,
        notify_options={"email": {"save_on_failure": True}},
        options=DispatchOptions(use_queue=True),
    )

    assert invoker.calls == []
    assert provider.calls == []
    assert len(queue.tasks) == 1
    task = queue.tasks[0]
    assert task.message_id == message.id
    assert (task.entity_type, task.entity_id) == ("node", 1)
    assert task.context == {"node": {1}, "user": {1}}
    assert task.subscribe_options.skip_context is True
    assert task.subscribe_options.range == 100
    assert task.subscribe_options.inside_queue_cycle is False
    assert task.cursor_user_id is None
    assert task.notify_options == {"email": ChannelOptions(save_on_failure=True)}


def test_queue_chain_pages_through_subscribers(message_store, subscription_store):
    subscription_store.create_flag("subscribe_node", "node")
    for user_id in (3, 5, 9):
        subscription_store.flag(user_id, "subscribe_node", 1)
    queue = ListQueue()
    invoker = RecordingInvoker()
    engine, gateway = build_engine(
        message_store, FlagSubscriptionProvider(subscription_store), queue=queue, invoker=invoker
    )
    worker = QueueWorker(engine, gateway, message_store)

    engine.send("node", DOC, Message(user_id=1), options=DispatchOptions(use_queue=True, range=2))

    cursors = []
    while queue.tasks:
        task = queue.tasks.pop(0)
        cursors.append(task.cursor_user_id)
        worker.run_task(task, deadline=None)
        assert len(cursors) < 10

    assert cursors == [None, 5, 9]
    assert [uid for uid, _, _ in invoker.calls] == [3, 5, 9]


def test_deadline_interrupts_at_channel_granularity(message_store):
    provider = StaticProvider({uid: {"notifiers": ["email", "discord"]} for uid in (2, 4, 6, 8, 10)})
    queue = ListQueue()
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, provider, queue=queue, invoker=invoker, clock=lambda: 100.0)
    message = message_store.save(Message(user_id=1))

    engine.send(
        "node",
        DOC,
        message,
        options=DispatchOptions(use_queue=True, inside_queue_cycle=True, deadline=50.0),
        context={"node": {1}},
    )

    assert [(uid, channel) for uid, channel, _ in invoker.calls] == [(2, "email")]
    assert len(queue.tasks) == 1
    assert queue.tasks[0].cursor_user_id == 2
    assert queue.tasks[0].subscribe_options.last_user_id == 2
    assert queue.tasks[0].subscribe_options.deadline is None


def test_deadline_in_future_processes_whole_batch(message_store):
    provider = StaticProvider({2: {}, 4: {}})
    queue = ListQueue()
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, provider, queue=queue, invoker=invoker, clock=lambda: 10.0)
    message = message_store.save(Message(user_id=1))

    engine.send(
        "node",
        DOC,
        message,
        options=DispatchOptions(use_queue=True, inside_queue_cycle=True, deadline=50.0),
        context={"node": {1}},
    )

    assert [uid for uid, _, _ in invoker.calls] == [2, 4]
    assert queue.tasks[0].cursor_user_id == 4


def test_sync_dispatch_ignores_deadline(message_store):
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, StaticProvider({2: {}, 4: {}}), invoker=invoker, clock=lambda: 100.0)

    engine.send("node", DOC, Message(user_id=1), options=DispatchOptions(deadline=50.0))

    assert [uid for uid, _, _ in invoker.calls] == [2, 4]


def test_delivery_failure_does_not_stop_loop(message_store):
    invoker = RecordingInvoker(results={"email": False})
    provider = StaticProvider({2: {"notifiers": ["email", "sms"]}, 3: {}})
    engine, _ = build_engine(message_store, provider, invoker=invoker)

    engine.send("node", DOC, Message(user_id=1))

    assert [(uid, channel) for uid, channel, _ in invoker.calls] == [(2, "email"), (2, "sms"), (3, "email")]


def test_explicit_recipients_bypass_resolution(message_store):
    provider = StaticProvider({2: {}})
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, provider, invoker=invoker)
    recipients = {uid: SubscriptionRecord(notifiers=["sms"]) for uid in (12, 4, 8, 20)}

    engine.send(
        "node",
        DOC,
        Message(user_id=1),
        options=DispatchOptions(explicit_recipients=recipients, range=2, last_user_id=4),
    )

    assert provider.calls == []
    assert [(uid, channel) for uid, channel, _ in invoker.calls] == [(8, "sms"), (12, "sms")]


def test_filtered_page_moves_cursor_forward(message_store):
    # the only candidate on this page is the message owner
    provider = StaticProvider({1: {}})
    queue = ListQueue()
    invoker = RecordingInvoker()
    engine, _ = build_engine(message_store, provider, queue=queue, invoker=invoker)
    message = message_store.save(Message(user_id=1))

    engine.send(
        "node",
        DOC,
        message,
        options=DispatchOptions(use_queue=True, inside_queue_cycle=True),
        context={"node": {1}},
    )

    assert invoker.calls == []
    assert queue.tasks[0].cursor_user_id == 1


def test_empty_cycle_ends_the_chain(message_store):
    queue = ListQueue()
    engine, _ = build_engine(message_store, StaticProvider({}), queue=queue)
    message = message_store.save(Message(user_id=1))

    returned = engine.send(
        "node",
        DOC,
        message,
        options=DispatchOptions(use_queue=True, inside_queue_cycle=True, last_user_id=9),
        context={"node": {1}},
    )

    assert returned is message
    assert queue.tasks == []


def test_queued_mode_without_queue_is_an_error(message_store):
    engine, _ = build_engine(message_store, StaticProvider({2: {}}))
    with pytest.raises(InvalidStateError):
        engine.send("node", DOC, Message(user_id=1), options=DispatchOptions(use_queue=True))


def test_queue_chain_with_cursor_blind_provider_sends_once(message_store):
    queue = ListQueue()
    invoker = RecordingInvoker()
    engine, gateway = build_engine(message_store, StaticProvider({2: {}, 4: {}}), queue=queue, invoker=invoker)
    worker = QueueWorker(engine, gateway, message_store)

    engine.send("node", DOC, Message(user_id=1), options=DispatchOptions(use_queue=True))

    cycles = 0
    while queue.tasks:
        worker.run_task(queue.tasks.pop(0), deadline=None)
        cycles += 1
        assert cycles < 10

    assert [uid for uid, _, _ in invoker.calls] == [2, 4]
    assert queue.tasks == []


def test_queued_send_drops_caller_deadline(message_store, caplog):
    queue = ListQueue()
    engine, _ = build_engine(message_store, StaticProvider({2: {}}), queue=queue)

    with caplog.at_level("DEBUG", logger="notify_dispatch.engine"):
        engine.send("node", DOC, Message(user_id=1), options=DispatchOptions(use_queue=True, deadline=500.0))

    assert queue.tasks[0].subscribe_options.deadline is None
    assert "Discarding deadline 500.0" in caplog.text
