import asyncio

from services.fanout import Hub, Subscriber, account_topic, conversation_topic


def test_topic_names():
    assert account_topic("a1") == "account:a1"
    assert conversation_topic("a1_b2") == "conversation:a1_b2"


def test_publish_from_a_worker_thread_reaches_the_loop():
    async def scenario():
        loop = asyncio.get_running_loop()
        hub = Hub()
        sub = Subscriber("acct", "sess", loop)
        hub.register(sub)
        hub.subscribe(sub, "users")
        delivered = await loop.run_in_executor(None, hub.publish, "users", {"type": "presence"})
        event = await asyncio.wait_for(sub.queue.get(), timeout=1)
        return delivered, event

    delivered, event = asyncio.run(scenario())
    assert delivered == 1
    assert event == {"type": "presence"}


def test_full_queue_marks_the_subscriber_overflowed():
    async def scenario():
        hub = Hub()
        sub = Subscriber("acct", "sess", asyncio.get_running_loop(), maxsize=1)
        hub.register(sub)
        hub.publish(account_topic("acct"), {"type": "one"})
        hub.publish(account_topic("acct"), {"type": "two"})
        await asyncio.sleep(0)
        return sub

    sub = asyncio.run(scenario())
    assert sub.overflowed is True
    assert sub.queue.qsize() == 1


def test_delivery_to_a_closed_loop_closes_the_subscriber():
    loop = asyncio.new_event_loop()
    sub = Subscriber("acct", "sess", loop)
    loop.close()
    sub.deliver({"type": "late"})
    assert sub.closed is True


def test_registry_bookkeeping():
    loop = asyncio.new_event_loop()
    try:
        hub = Hub()
        first = Subscriber("acct", "s1", loop)
        second = Subscriber("acct", "s2", loop)
        hub.register(first)
        hub.register(second)
        hub.subscribe(first, "conversation:c")
        hub.subscribe(second, "conversation:c")

        assert hub.connection_count("acct") == 2
        assert hub.connections("acct", "s2") == [second]
        assert hub.is_subscribed("acct", "conversation:c")

        hub.unsubscribe_account("acct", "conversation:c")
        assert not hub.is_subscribed("acct", "conversation:c")
        assert hub.publish("conversation:c", {"type": "x"}) == 0

        assert hub.unregister(first) == 1
        assert first.closed is True
        assert hub.unregister(second) == 0
        assert hub.publish(account_topic("acct"), {"type": "x"}) == 0
    finally:
        loop.close()
