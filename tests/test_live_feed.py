from live_feed import LiveFeed


def test_filtered_delivery_and_unsubscribe():
    feed = LiveFeed()
    got_a, got_b = [], []
    sub_a = feed.subscribe("messages", {"chat_id": "a"}, got_a.append)
    feed.subscribe("messages", {"chat_id": "b"}, got_b.append)

    assert feed.publish("messages", {"id": "1", "chat_id": "a"}) == 1
    assert feed.publish("chats", {"id": "2", "chat_id": "a"}) == 0
    feed.unsubscribe(sub_a)
    feed.publish("messages", {"id": "3", "chat_id": "a"})

    assert [r["id"] for r in got_a] == ["1"]
    assert got_b == []
    assert not feed.unsubscribe(sub_a)


def test_failing_subscriber_does_not_block_others():
    feed = LiveFeed()
    got = []

    def broken(row):
        raise RuntimeError("boom")

    feed.subscribe("messages", {}, broken)
    feed.subscribe("messages", {}, got.append)
    assert feed.publish("messages", {"id": "1"}) == 1
    assert got == [{"id": "1"}]
