"""Tests for the MutationCoordinator and invalidation cascades."""

import asyncio

import pytest

from querycascade import (
    ConcurrencyPolicy,
    EntryStatus,
    Invalidation,
    MutationDescriptor,
    MutationError,
    MutationRejected,
    MutationState,
    OptimisticUpdate,
    QueryClient,
    StaleWriteDiscarded,
)

COMMENTS_P1 = ("comments", "post-1", 1, 20)
COMMENTS_P2 = ("comments", "post-2", 1, 20)
FEED = ("feed",)


class FakeBackend:
    """Posts with comments, counting every read."""

    def __init__(self) -> None:
        self.comments: dict[str, list[str]] = {"post-1": ["a", "b", "c"], "post-2": ["x"]}
        self.reads: dict[str, int] = {}

    def _count(self, name: str) -> None:
        self.reads[name] = self.reads.get(name, 0) + 1

    async def list_comments(self, post_id: str) -> list[str]:
        self._count(f"comments:{post_id}")
        return list(self.comments[post_id])

    async def feed(self) -> list[dict]:
        self._count("feed")
        return [
            {"id": post_id, "commentCount": len(comments)}
            for post_id, comments in self.comments.items()
        ]

    async def create_comment(self, data: dict) -> dict:
        self.comments[data["postId"]].append(data["body"])
        return {"postId": data["postId"], "body": data["body"]}


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


def comment_query(client: QueryClient, backend: FakeBackend, post_id: str):
    return client.query(
        ("comments", post_id, 1, 20), lambda: backend.list_comments(post_id)
    )


def create_comment(backend: FakeBackend, **kwargs) -> MutationDescriptor:
    return MutationDescriptor(
        name="createComment",
        fn=backend.create_comment,
        invalidates=lambda data, result: [("comments", result["postId"]), FEED],
        **kwargs,
    )


class TestCommentCreation:
    """Creating a comment refreshes its comment list and the feed."""

    async def test_cascade_refetches_subscribed_keys(self, client, backend) -> None:
        comments_seen: list = []
        feed_seen: list = []
        other_seen: list = []
        client.subscribe(comment_query(client, backend, "post-1"), comments_seen.append)
        client.subscribe(client.query(FEED, backend.feed), feed_seen.append)
        client.subscribe(comment_query(client, backend, "post-2"), other_seen.append)
        await client.wait_idle()
        assert feed_seen[-1].value[0]["commentCount"] == 3

        mutation = client.mutation(create_comment(backend))
        outcome = await mutation.run({"postId": "post-1", "body": "hi"})

        assert outcome.succeeded
        assert mutation.state is MutationState.SUCCESS
        assert sorted(outcome.invalidated) == sorted([COMMENTS_P1, FEED])

        # Each subscriber saw the stale transition, then the new data
        assert [s.status for s in comments_seen] == [
            EntryStatus.FRESH,
            EntryStatus.STALE,
            EntryStatus.FRESH,
        ]
        assert comments_seen[-1].value == ["a", "b", "c", "hi"]
        assert feed_seen[-2].status is EntryStatus.STALE
        assert feed_seen[-1].value[0]["commentCount"] == 4

        # post-2 was never touched
        assert len(other_seen) == 1
        assert backend.reads["comments:post-2"] == 1
        assert client.store.get(COMMENTS_P2).status is EntryStatus.FRESH

    async def test_entries_leave_fresh_before_run_returns(self, client, backend) -> None:
        await client.fetch(comment_query(client, backend, "post-1"))
        await client.fetch(client.query(FEED, backend.feed))

        mutation = client.mutation(create_comment(backend, await_refetch=False))
        outcome = await mutation.run({"postId": "post-1", "body": "hi"})

        statuses = {key: client.store.peek(key).status for key in outcome.invalidated}
        assert statuses == {COMMENTS_P1: EntryStatus.STALE, FEED: EntryStatus.STALE}

    async def test_unsubscribed_keys_are_lazy(self, client, backend) -> None:
        query = comment_query(client, backend, "post-1")
        await client.fetch(query)

        await client.mutation(create_comment(backend)).run({"postId": "post-1", "body": "hi"})

        assert backend.reads["comments:post-1"] == 1
        assert client.store.peek(COMMENTS_P1).status is EntryStatus.STALE

        # Next read serves the stale list and refreshes it
        assert await client.fetch(query) == ["a", "b", "c"]
        await client.wait_idle()
        assert client.store.get(COMMENTS_P1).value == ["a", "b", "c", "hi"]

    async def test_evicting_invalidation(self, client, backend) -> None:
        query = comment_query(client, backend, "post-1")
        await client.fetch(query)

        descriptor = MutationDescriptor(
            name="createComment",
            fn=backend.create_comment,
            invalidates=[Invalidation(("comments", "post-1"), evict=True)],
        )
        await client.mutation(descriptor).run({"postId": "post-1", "body": "hi"})

        assert client.store.get(COMMENTS_P1) is None
        assert await client.fetch(query) == ["a", "b", "c", "hi"]


class TestFailure:
    """Failed writes never invalidate."""

    async def test_failed_write_leaves_cache_untouched(self, client, backend) -> None:
        await client.fetch(comment_query(client, backend, "post-1"))

        async def broken(data):
            raise ConnectionError("write failed")

        mutation = client.mutation(
            MutationDescriptor(name="createComment", fn=broken, invalidates=[("comments",)])
        )
        outcome = await mutation.run({"postId": "post-1", "body": "hi"})

        assert outcome.state is MutationState.FAILURE
        assert isinstance(outcome.error, MutationError)
        assert isinstance(outcome.error.cause, ConnectionError)
        assert mutation.error is outcome.error
        assert client.store.get(COMMENTS_P1).status is EntryStatus.FRESH

    async def test_execute_raises(self, client) -> None:
        async def broken(data):
            raise ConnectionError("write failed")

        mutation = client.mutation(MutationDescriptor(name="deletePost", fn=broken))
        with pytest.raises(MutationError, match="deletePost"):
            await mutation.execute("post-1")

    async def test_reported_failure(self, client, backend) -> None:
        await client.fetch(client.query(FEED, backend.feed))

        async def create_post(data):
            return {"success": False, "error": "Not allowed"}

        mutation = client.mutation(
            MutationDescriptor(
                name="createPost",
                fn=create_post,
                invalidates=[FEED],
                is_success=lambda result: result["success"],
            )
        )
        outcome = await mutation.run({"content": "hello"})

        assert not outcome.succeeded
        assert "Not allowed" in str(outcome.error)
        assert outcome.data == {"success": False, "error": "Not allowed"}
        assert client.store.get(FEED).status is EntryStatus.FRESH

    async def test_optimistic_rollback(self, client, backend) -> None:
        seen: list = []
        client.subscribe(comment_query(client, backend, "post-1"), seen.append)
        await client.wait_idle()
        release = asyncio.Event()

        async def slow_broken(data):
            await release.wait()
            raise ConnectionError("write failed")

        mutation = client.mutation(
            MutationDescriptor(
                name="createComment",
                fn=slow_broken,
                invalidates=[("comments", "post-1")],
                optimistic=lambda data: [
                    OptimisticUpdate(COMMENTS_P1, lambda current: [*current, data["body"]])
                ],
            )
        )
        task = asyncio.create_task(mutation.run({"postId": "post-1", "body": "hi"}))
        await asyncio.sleep(0)

        provisional = client.store.peek(COMMENTS_P1)
        assert provisional.value == ["a", "b", "c", "hi"]
        assert provisional.status is EntryStatus.STALE
        assert seen[-1].value == ["a", "b", "c", "hi"]
        assert mutation.state is MutationState.RUNNING

        release.set()
        outcome = await task

        assert not outcome.succeeded
        restored = client.store.get(COMMENTS_P1)
        assert restored.value == ["a", "b", "c"]
        assert restored.status is EntryStatus.FRESH
        assert seen[-1].value == ["a", "b", "c"]

    async def test_optimistic_success_refetches(self, client, backend) -> None:
        client.subscribe(comment_query(client, backend, "post-1"))
        await client.wait_idle()

        mutation = client.mutation(
            create_comment(
                backend,
                optimistic=lambda data: [
                    OptimisticUpdate(COMMENTS_P1, lambda current: [*current, "pending"])
                ],
            )
        )
        await mutation.run({"postId": "post-1", "body": "hi"})

        entry = client.store.get(COMMENTS_P1)
        assert entry.value == ["a", "b", "c", "hi"]
        assert entry.shadow is None


class TestIdempotence:
    """Invalidating an invalidated prefix changes nothing."""

    async def test_repeat_invalidation_no_duplicate_refetch(self, client, counter) -> None:
        await client.fetch(client.query(COMMENTS_P1, counter))

        first = client.coordinator.invalidate([Invalidation(("comments",), evict=True)])
        version = client.store.peek(COMMENTS_P1).version
        second = client.coordinator.invalidate([Invalidation(("comments",), evict=True)])

        assert first == [COMMENTS_P1]
        assert second == []
        assert client.coordinator.refetch(second) == []
        assert client.store.peek(COMMENTS_P1).version == version
        assert len(client.registry) == 0
        assert counter.calls == 1

    async def test_repeat_invalidation_replaces_pending_refetch(self, client, counter) -> None:
        """A refetch started before the second invalidation is superseded."""
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return await counter()

        client.subscribe(client.query(COMMENTS_P1, slow))
        release.set()
        await client.wait_idle()

        release.clear()
        first = await client.invalidate(("comments",), evict=True, refetch=False)
        pending = client.coordinator.refetch(first)[0]

        second = client.coordinator.invalidate([Invalidation(("comments",), evict=True)])
        assert second == [COMMENTS_P1]
        assert pending.superseded
        assert client.registry.get(COMMENTS_P1) is None

        replacement = client.coordinator.refetch(second)[0]
        assert replacement is not pending
        release.set()
        await client.wait_idle()
        assert client.store.get(COMMENTS_P1).value == await replacement


class VersionedBackend:
    """Reads report the write version current when they started."""

    def __init__(self) -> None:
        self.version = 0
        self.release = asyncio.Event()

    async def read(self) -> dict:
        seen = self.version
        await self.release.wait()
        return {"v": seen}

    async def write(self, data) -> dict:
        self.version += 1
        return {"v": self.version}


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestOverlappingWrites:
    """A second write landing while the first write's refetch is pending."""

    async def test_second_write_during_first_fetch(self, client) -> None:
        db = VersionedBackend()
        seen: list = []
        client.subscribe(client.query(COMMENTS_P1, db.read), seen.append)
        await settle()

        mutation = client.mutation(
            MutationDescriptor(
                name="createComment", fn=db.write, invalidates=[("comments", "post-1")]
            )
        )
        first = asyncio.create_task(mutation.run({}))
        await settle()
        second = asyncio.create_task(mutation.run({}))
        await settle()

        db.release.set()
        await asyncio.gather(first, second)
        await client.wait_idle()

        entry = client.store.get(COMMENTS_P1)
        assert entry.value == {"v": 2}
        assert entry.status is EntryStatus.FRESH
        assert seen[-1].value == {"v": 2}

    async def test_second_evicting_write(self, client) -> None:
        db = VersionedBackend()
        db.release.set()
        seen: list = []
        client.subscribe(client.query(COMMENTS_P1, db.read), seen.append)
        await client.wait_idle()
        assert seen[-1].value == {"v": 0}

        db.release.clear()
        mutation = client.mutation(
            MutationDescriptor(
                name="deleteComment",
                fn=db.write,
                invalidates=[Invalidation(("comments",), evict=True)],
            )
        )
        first = asyncio.create_task(mutation.run({}))
        await settle()
        second = asyncio.create_task(mutation.run({}))
        await settle()

        db.release.set()
        outcomes = await asyncio.gather(first, second)
        await client.wait_idle()

        assert all(outcome.succeeded for outcome in outcomes)
        entry = client.store.get(COMMENTS_P1)
        assert entry.value == {"v": 2}
        assert entry.status is EntryStatus.FRESH
        assert seen[-1].value == {"v": 2}


class TestStaleWrites:
    """A read started before a write never overwrites post-write data."""

    async def test_slow_read_discarded(self, client) -> None:
        slow_release = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            if calls == 1:
                await slow_release.wait()
                return {"version": "before-write"}
            return {"version": "after-write"}

        query = client.query(COMMENTS_P1, fetch)
        seen: list = []
        client.subscribe(query, seen.append)
        slow = client.registry.get(COMMENTS_P1)
        await asyncio.sleep(0)

        async def write(data):
            return data

        mutation = client.mutation(
            MutationDescriptor(name="createComment", fn=write, invalidates=[("comments",)])
        )
        await mutation.run({"postId": "post-1"})
        assert client.store.get(COMMENTS_P1).value == {"version": "after-write"}

        slow_release.set()
        with pytest.raises(StaleWriteDiscarded):
            await slow
        assert client.store.get(COMMENTS_P1).value == {"version": "after-write"}
        assert seen[-1].value == {"version": "after-write"}

    async def test_direct_reader_retries_after_discard(self, client) -> None:
        slow_release = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            if calls == 1:
                await slow_release.wait()
                return "old"
            return "new"

        query = client.query(COMMENTS_P1, fetch)
        reader = asyncio.create_task(client.fetch(query))
        await asyncio.sleep(0)

        await client.invalidate(("comments",))
        slow_release.set()

        assert await reader == "new"
        assert client.store.get(COMMENTS_P1).value == "new"


class TestConcurrency:
    """Tests for concurrency policies."""

    async def test_allow_runs_concurrently(self, client) -> None:
        release = asyncio.Event()
        running = 0
        peak = 0

        async def write(data):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1
            return data

        mutation = client.mutation(MutationDescriptor(name="likePost", fn=write))
        tasks = [asyncio.create_task(mutation.run(i)) for i in range(3)]
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(*tasks)
        assert peak == 3

    async def test_queue_serializes(self, client) -> None:
        order: list = []

        async def write(data):
            order.append(("start", data))
            await asyncio.sleep(0)
            order.append(("end", data))
            return data

        mutation = client.mutation(
            MutationDescriptor(name="likePost", fn=write, concurrency=ConcurrencyPolicy.QUEUE)
        )
        await asyncio.gather(mutation.run(1), mutation.run(2))
        assert order == [("start", 1), ("end", 1), ("start", 2), ("end", 2)]

    async def test_reject_while_running(self, client) -> None:
        release = asyncio.Event()

        async def write(data):
            await release.wait()
            return data

        mutation = client.mutation(
            MutationDescriptor(name="likePost", fn=write, concurrency=ConcurrencyPolicy.REJECT)
        )
        first = asyncio.create_task(mutation.run(1))
        await asyncio.sleep(0)
        with pytest.raises(MutationRejected):
            await mutation.run(2)
        release.set()
        assert (await first).data == 1
