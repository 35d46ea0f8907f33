"""
AIDB Cascade Tests

End-to-end generation of entity trees: depth bounds, backrefs, progress
events, determinism and the SchemaEngine facade.
"""

import asyncio

import pytest

from aidb.core.config import AIDBConfig
from aidb.providers.memory import MemoryDataProvider
from aidb.resolution.context import CascadeOptions, Providers


# === Test Fixtures ===

TOPICS = {"title": "AI weekly", "topics": ["ML", "NLP", "CV"]}


async def run_cascade(schema, type_name, data=None, store=None, **options):
    from aidb.cascade import cascade

    store = store if store is not None else MemoryDataProvider()
    resolved = await cascade(
        schema,
        type_name,
        data,
        providers=Providers(data=store),
        options=CascadeOptions(**options),
        config=AIDBConfig(),
    )
    return resolved, store


async def snapshot(store):
    """All stored entities as {type: {id: data}}."""
    return {
        type_name: {e.id: dict(e.data) for e in await store.list(type_name)}
        for type_name in sorted(store.types())
    }


class TestBlogCascade:
    """Test the Blog -> Topic -> Post tree."""

    @pytest.mark.asyncio
    async def test_full_tree(self, blog_schema):
        """Test entity counts and the ids wired through every relation."""
        blog, store = await run_cascade(blog_schema, "Blog", TOPICS)

        assert blog.ok
        assert store.count("Blog") == 1
        assert store.count("Topic") == 3
        assert store.count("Post") == 3
        assert len(blog["topics"]) == 3

        topics = [await store.get("Topic", topic_id) for topic_id in blog["topics"]]
        assert [t["name"] for t in topics] == ["ML", "NLP", "CV"]

        for topic in topics:
            assert topic["blog"] == blog.id
            post = await store.get("Post", topic["posts"])
            assert post["topic"] == topic.id
            assert post["title"] == "A post for posts"

    @pytest.mark.asyncio
    async def test_forward_edges_recorded(self, blog_schema):
        """Test that generated children are related with metadata."""
        blog, store = await run_cascade(blog_schema, "Blog", TOPICS)

        related = await store.related("Blog", blog.id, "topics")
        assert [e.id for e in related] == blog["topics"]
        assert store.edge_metadata(blog.id, "topics", "Topic", blog["topics"][0]) == {"generated": True}

    @pytest.mark.asyncio
    async def test_order_notes(self, blog_schema):
        """Test that the generation order is reported on the root."""
        blog, _ = await run_cascade(blog_schema, "Blog", TOPICS)

        assert blog.notes["$order"] == "Post -> Topic -> Blog"
        assert blog.notes["$groups"] == "Post | Topic | Blog"

    @pytest.mark.asyncio
    async def test_max_depth_zero(self, blog_schema):
        """Test that depth 0 creates the root only."""
        blog, store = await run_cascade(blog_schema, "Blog", TOPICS, max_depth=0)

        assert store.count() == 1
        assert blog["topics"] == []
        assert blog.notes["topics"] == "max depth reached"
        assert blog.ok

    @pytest.mark.asyncio
    async def test_max_depth_one(self, blog_schema):
        """Test that depth 1 stops below the topics."""
        blog, store = await run_cascade(blog_schema, "Blog", TOPICS, max_depth=1)

        assert store.count("Topic") == 3
        assert store.count("Post") == 0
        for topic_id in blog["topics"]:
            topic = await store.get("Topic", topic_id)
            assert topic["posts"] is None
            assert topic["blog"] == blog.id

    @pytest.mark.asyncio
    async def test_max_depth_two(self, blog_schema):
        """Test that depth 2 reaches the posts."""
        _, store = await run_cascade(blog_schema, "Blog", TOPICS, max_depth=2)

        assert store.count() == 7

    @pytest.mark.asyncio
    async def test_cascade_types(self, blog_schema):
        """Test that cascade_types limits which types are generated."""
        _, store = await run_cascade(blog_schema, "Blog", TOPICS, cascade_types={"Topic"})

        assert store.count("Topic") == 3
        assert store.count("Post") == 0

    @pytest.mark.asyncio
    async def test_default_topics(self, blog_schema):
        """Test default specs when no relation input is given."""
        blog, store = await run_cascade(blog_schema, "Blog", {"title": "AI weekly"})

        assert len(blog["topics"]) == 1
        topic = await store.get("Topic", blog["topics"][0])
        assert topic["name"] == "A topic for topics"

    @pytest.mark.asyncio
    async def test_unknown_root_type(self, blog_schema):
        """Test that an unknown root fails before any entity is created."""
        from aidb.schema.errors import SchemaValidationError

        store = MemoryDataProvider()
        with pytest.raises(SchemaValidationError):
            await run_cascade(blog_schema, "Comment", {}, store=store)

        assert store.count() == 0


class TestSelfReference:
    """Test self-referencing types bounded by depth."""

    @pytest.fixture
    def node_schema(self):
        return {"Node": {"name": "string", "next": "->Node"}}

    @pytest.mark.asyncio
    async def test_chain_length(self, node_schema):
        """Test that max_depth 3 yields a chain of four nodes."""
        head, store = await run_cascade(node_schema, "Node", {"name": "head"}, max_depth=3)

        assert store.count("Node") == 4

        length = 1
        node = await store.get("Node", head.id)
        while node["next"] is not None:
            child = await store.get("Node", node["next"])
            assert child["nodes"] == [node.id]
            node = child
            length += 1
        assert length == 4

    @pytest.mark.asyncio
    async def test_hard_depth_cap(self, node_schema):
        """Test that max_depth is clamped to the configured hard cap."""
        _, store = await run_cascade(node_schema, "Node", {"name": "head"}, max_depth=50)

        assert store.count("Node") == 11


class TestCycles:
    """Test cycle rejection."""

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_side_effects(self):
        """Test that a required forward-exact cycle creates nothing."""
        from aidb.schema.errors import SchemaCycleError

        schema = {
            "Author": {"name": "string", "book": "->Book"},
            "Book": {"title": "string", "author": "->Author"},
        }
        store = MemoryDataProvider()

        with pytest.raises(SchemaCycleError) as exc_info:
            await run_cascade(schema, "Author", {"name": "Ada"}, store=store)

        assert store.count() == 0
        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]

    @pytest.mark.asyncio
    async def test_optional_edge_breaks_cycle(self):
        """Test that an optional back edge is not a cycle."""
        schema = {
            "Author": {"name": "string", "book": "->Book"},
            "Book": {"title": "string", "author": "->Author?"},
        }

        author, store = await run_cascade(schema, "Author", {"name": "Ada"})

        assert author.ok
        assert store.count("Book") == 1


class TestProgress:
    """Test progress callbacks."""

    @pytest.mark.asyncio
    async def test_sync_callback(self, blog_schema):
        """Test the event sequence for a full cascade."""
        events = []

        await run_cascade(blog_schema, "Blog", TOPICS, on_progress=events.append)

        first, last = events[0], events[-1]
        assert first.phase == "generating"
        assert first.order == ["Post", "Topic", "Blog"]
        assert first.entity_id is None

        assert last.phase == "complete"
        assert last.total_entities_created == 7
        assert last.types_generated == ["Blog", "Topic", "Post"]

        created = [e for e in events if e.phase == "generating" and e.entity_id]
        resolved = [e for e in events if e.phase == "resolving"]
        assert len(created) == 7
        assert len(resolved) == 7
        assert [e.total_entities_created for e in created] == list(range(1, 8))
        assert created[0].current_type == "Blog"
        assert created[0].depth == 0

    @pytest.mark.asyncio
    async def test_async_callback(self, blog_schema):
        """Test that coroutine callbacks are awaited."""
        phases = []

        async def on_progress(event):
            await asyncio.sleep(0)
            phases.append(event.phase)

        await run_cascade(blog_schema, "Blog", TOPICS, on_progress=on_progress)

        assert phases[0] == "generating"
        assert phases[-1] == "complete"
        assert len(phases) == 16

    @pytest.mark.asyncio
    async def test_failing_callback(self, blog_schema):
        """Test that a failing callback does not abort the cascade."""

        def on_progress(event):
            raise RuntimeError("listener gone")

        blog, store = await run_cascade(blog_schema, "Blog", TOPICS, on_progress=on_progress)

        assert blog.ok
        assert store.count() == 7


class TestDeterminism:
    """Test seeded runs."""

    @pytest.mark.asyncio
    async def test_same_seed_same_output(self, blog_schema):
        """Test that a seed plus fresh providers reproduce a run."""
        first, first_store = await run_cascade(blog_schema, "Blog", TOPICS, seed="fixed")
        second, second_store = await run_cascade(blog_schema, "Blog", TOPICS, seed="fixed")

        assert first.to_dict() == second.to_dict()
        assert await snapshot(first_store) == await snapshot(second_store)

    @pytest.mark.asyncio
    async def test_different_seed_different_ids(self, blog_schema):
        """Test that the seed feeds every id."""
        first, _ = await run_cascade(blog_schema, "Blog", TOPICS, seed="a")
        second, _ = await run_cascade(blog_schema, "Blog", TOPICS, seed="b")

        assert first.id != second.id
        assert set(first["topics"]).isdisjoint(second["topics"])


class TestSchemaEngine:
    """Test the facade and module-level helpers."""

    @pytest.mark.asyncio
    async def test_engine_cascade(self, blog_schema):
        """Test cascade through the facade."""
        from aidb import SchemaEngine

        engine = SchemaEngine(blog_schema, config=AIDBConfig())
        blog = await engine.cascade("Blog", {"title": "AI weekly", "topics": ["ML"]})

        assert blog.ok
        assert engine.data.count() == 3
        assert engine.schema["Topic"].fields["blog"].derived

    @pytest.mark.asyncio
    async def test_engine_draft_then_resolve(self, blog_schema):
        """Test the two-phase API with a configured seed."""
        from aidb import SchemaEngine

        config = AIDBConfig(generation={"seed": "s1"})
        engine = SchemaEngine(blog_schema, config=config)

        draft = engine.draft("Post", {"title": "Hello"})
        assert draft.id == SchemaEngine(blog_schema, config=config).draft("Post", {"title": "Hello"}).id

        resolved = await engine.resolve(draft)
        assert resolved.id == draft.id
        assert resolved["topic"] is None
        assert engine.data.count("Post") == 1

    @pytest.mark.asyncio
    async def test_module_functions(self, blog_schema):
        """Test draft/resolve/cascade with explicit providers."""
        from aidb.cascade import cascade, draft, resolve

        store = MemoryDataProvider()
        providers = Providers(data=store)

        post = draft(blog_schema, "Post", {"title": "Hello"})
        assert post.phase == "draft"
        assert post.refs["topic"].operator.value == "<-"

        resolved = await resolve(blog_schema, post, providers, config=AIDBConfig())
        assert resolved.phase == "resolved"
        assert store.count("Post") == 1

        await cascade(blog_schema, "Topic", {"name": "ML"}, providers, config=AIDBConfig())
        assert store.count("Topic") == 1
        assert store.count("Post") == 2
