import asyncio

from sync.processor import SerializedProcessor


def test_items_are_handled_one_at_a_time_in_submit_order():
    async def main():
        order = []
        running = 0
        overlap = False

        async def handler(item):
            nonlocal running, overlap
            running += 1
            overlap = overlap or running > 1
            # Earlier items are slower; order must still hold.
            await asyncio.sleep(0.01 * (5 - item))
            order.append(item)
            running -= 1

        p = SerializedProcessor(handler)
        for i in range(5):
            p.submit(i)
        await p.drain()
        await p.close()
        return order, overlap, p.processed

    order, overlap, processed = asyncio.run(main())
    assert order == [0, 1, 2, 3, 4]
    assert overlap is False
    assert processed == 5


def test_failing_item_does_not_stop_the_queue():
    async def main():
        handled = []

        async def handler(item):
            if item == "bad":
                raise RuntimeError("boom")
            handled.append(item)

        p = SerializedProcessor(handler, name="test")
        for item in ("a", "bad", "b"):
            p.submit(item)
        await p.close()
        return handled, p.failed, p.pending

    handled, failed, pending = asyncio.run(main())
    assert handled == ["a", "b"]
    assert failed == 1
    assert pending == 0
