"""
Unit tests for the per-receipt progress channel.
"""
import asyncio

from confirmit.receipts.pipeline.progress import ProgressChannel, Subscriber

from tests.fakes import make_subscriber


def _events(messages):
    return [m["event"] for m in messages]


class TestSubscribe:
    def test_subscribe_acknowledges(self):
        async def scenario():
            channel = ProgressChannel()
            sub, messages = make_subscriber()
            ack = await channel.subscribe("RCP-1", sub)
            return channel, ack, messages

        channel, ack, messages = asyncio.run(scenario())
        assert ack["receipt_id"] == "RCP-1"
        assert ack["timestamp"]
        assert messages == [{"event": "subscribed", "data": ack}]
        assert channel.subscriber_count("RCP-1") == 1

    def test_resubscribe_is_noop_join(self):
        async def scenario():
            channel = ProgressChannel()
            sub, messages = make_subscriber()
            await channel.subscribe("RCP-1", sub)
            await channel.subscribe("RCP-1", sub)
            delivered = await channel.emit("RCP-1", "progress", {"percent": 10})
            return channel, delivered, messages

        channel, delivered, messages = asyncio.run(scenario())
        assert channel.subscriber_count("RCP-1") == 1
        assert delivered == 1
        assert _events(messages) == ["subscribed", "subscribed", "progress"]


class TestEmit:
    def test_fan_out_to_group_only(self):
        async def scenario():
            channel = ProgressChannel()
            a, a_msgs = make_subscriber("a")
            b, b_msgs = make_subscriber("b")
            other, other_msgs = make_subscriber("other")
            await channel.subscribe("RCP-1", a)
            await channel.subscribe("RCP-1", b)
            await channel.subscribe("RCP-2", other)
            await channel.emit("RCP-1", "progress", {"percent": 20})
            return a_msgs, b_msgs, other_msgs

        a_msgs, b_msgs, other_msgs = asyncio.run(scenario())
        assert _events(a_msgs) == ["subscribed", "progress"]
        assert _events(b_msgs) == ["subscribed", "progress"]
        assert _events(other_msgs) == ["subscribed"]

    def test_no_replay_for_late_subscribers(self):
        async def scenario():
            channel = ProgressChannel()
            await channel.emit("RCP-1", "progress", {"percent": 20})
            sub, messages = make_subscriber()
            await channel.subscribe("RCP-1", sub)
            await channel.emit("RCP-1", "progress", {"percent": 40})
            return messages

        messages = asyncio.run(scenario())
        assert [m["data"].get("percent") for m in messages if m["event"] == "progress"] == [40]

    def test_emit_without_subscribers(self):
        assert asyncio.run(ProgressChannel().emit("RCP-9", "progress", {})) == 0

    def test_failing_subscriber_is_dropped(self):
        async def broken_send(message):
            if message["event"] != "subscribed":
                raise RuntimeError("socket closed")

        async def scenario():
            channel = ProgressChannel()
            broken = Subscriber(subscriber_id="broken", send=broken_send)
            healthy, messages = make_subscriber("healthy")
            await channel.subscribe("RCP-1", broken)
            await channel.subscribe("RCP-1", healthy)
            delivered = await channel.emit("RCP-1", "progress", {"percent": 50})
            return channel, delivered, messages

        channel, delivered, messages = asyncio.run(scenario())
        assert delivered == 1
        assert channel.subscriber_count("RCP-1") == 1
        assert _events(messages) == ["subscribed", "progress"]


class TestDisconnect:
    def test_disconnect_leaves_every_group(self):
        async def scenario():
            channel = ProgressChannel()
            sub, messages = make_subscriber()
            await channel.subscribe("RCP-1", sub)
            await channel.subscribe("RCP-2", sub)
            await channel.disconnect(sub)
            await channel.emit("RCP-1", "progress", {})
            await channel.emit("RCP-2", "progress", {})
            return channel, messages

        channel, messages = asyncio.run(scenario())
        assert channel.subscriber_count("RCP-1") == 0
        assert channel.subscriber_count("RCP-2") == 0
        assert _events(messages) == ["subscribed", "subscribed"]

    def test_unsubscribe_single_group(self):
        async def scenario():
            channel = ProgressChannel()
            sub, messages = make_subscriber()
            await channel.subscribe("RCP-1", sub)
            await channel.subscribe("RCP-2", sub)
            await channel.unsubscribe("RCP-1", sub)
            await channel.emit("RCP-1", "progress", {"percent": 1})
            await channel.emit("RCP-2", "progress", {"percent": 2})
            return messages

        messages = asyncio.run(scenario())
        assert [m["data"]["percent"] for m in messages if m["event"] == "progress"] == [2]

    def test_concurrent_subscribe_and_emit(self):
        async def scenario():
            channel = ProgressChannel()
            subs = [make_subscriber(f"s{i}") for i in range(20)]
            await asyncio.gather(
                *(channel.subscribe(f"RCP-{i % 4}", sub) for i, (sub, _) in enumerate(subs))
            )
            await asyncio.gather(*(channel.emit(f"RCP-{i}", "progress", {"percent": i}) for i in range(4)))
            return channel, subs

        channel, subs = asyncio.run(scenario())
        assert sum(channel.subscriber_count(f"RCP-{i}") for i in range(4)) == 20
        for i, (_, messages) in enumerate(subs):
            progress = [m["data"]["percent"] for m in messages if m["event"] == "progress"]
            assert progress == [i % 4]
