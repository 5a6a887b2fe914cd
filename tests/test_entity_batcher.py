"""Tests for per-entity coalescing."""
import asyncio

from hass_link.entity_batcher import EntityBatcher


async def test_last_write_wins_within_window():
    batches = []
    batcher = EntityBatcher(batches.append, batch_window=0.01)

    batcher.enqueue("light.kitchen", "on")
    batcher.enqueue("light.hall", "off")
    batcher.enqueue("light.kitchen", "off")
    batcher.enqueue("light.kitchen", "on")

    await asyncio.sleep(0.03)

    assert batches == [{"light.kitchen": "on", "light.hall": "off"}]
    assert batcher.pending == 0


async def test_one_delivery_per_window():
    batches = []
    batcher = EntityBatcher(batches.append, batch_window=0.01)

    batcher.enqueue("a", 1)
    await asyncio.sleep(0.03)
    batcher.enqueue("a", 2)
    batcher.enqueue("b", 3)
    await asyncio.sleep(0.03)

    assert batches == [{"a": 1}, {"a": 2, "b": 3}]


async def test_empty_flush_is_a_noop():
    batches = []
    batcher = EntityBatcher(batches.append)
    batcher.flush()
    assert batches == []


async def test_clear_discards_pending_updates():
    batches = []
    batcher = EntityBatcher(batches.append, batch_window=0.01)

    batcher.enqueue("sensor.temp", 21)
    batcher.clear()
    await asyncio.sleep(0.03)

    assert batches == []
    assert batcher.pending == 0


async def test_reentrant_enqueue_goes_to_next_batch():
    batches = []
    batcher = EntityBatcher(lambda batch: None, batch_window=0.01)

    def consumer(batch):
        batches.append(dict(batch))
        if len(batches) == 1:
            batcher.enqueue("late", True)

    batcher._on_flush = consumer
    batcher.enqueue("first", True)
    await asyncio.sleep(0.05)

    assert batches == [{"first": True}, {"late": True}]


async def test_consumer_error_does_not_break_batcher():
    calls = []

    def consumer(batch):
        calls.append(batch)
        raise RuntimeError("consumer bug")

    batcher = EntityBatcher(consumer, batch_window=0.01)
    batcher.enqueue("a", 1)
    await asyncio.sleep(0.03)
    batcher.enqueue("b", 2)
    await asyncio.sleep(0.03)

    assert calls == [{"a": 1}, {"b": 2}]


async def test_async_consumer_is_scheduled():
    batches = []

    async def consumer(batch):
        batches.append(batch)

    batcher = EntityBatcher(consumer, batch_window=0.01)
    batcher.enqueue("a", 1)
    await asyncio.sleep(0.03)

    assert batches == [{"a": 1}]


async def test_manual_flush_delivers_immediately():
    batches = []
    batcher = EntityBatcher(batches.append, batch_window=10)
    batcher.enqueue("a", 1)
    batcher.flush()
    assert batches == [{"a": 1}]
