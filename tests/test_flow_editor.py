import asyncio

import pytest

from database.database import FLOW_CONNECTIONS, FLOW_PAGES
from database.models import FlowConnectionRecord, FlowPageRecord
from errors import NotFoundError, StoreError, ValidationError
from flow_editor import EditorRegistry, FlowGraphEditor, free_position
from state import EditorHistory, FlowEdge, FlowNode, GraphSnapshot


def _positions(editor):
    return {n.name: (n.x, n.y) for n in editor.snapshot.nodes}


def _edge_pairs(editor, ids):
    names = {v: k for k, v in ids.items()}
    return {(names[e.source], names[e.target]) for e in editor.snapshot.edges}


def _crowded(a, b):
    return abs(a[0] - b[0]) < 250 and abs(a[1] - b[1]) < 150


class TestLoad:
    def test_load_reads_pages_and_connections(self, store, seed):
        """Pages and connections of the active flow become nodes and edges"""

        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            editor = await FlowGraphEditor.load(store, pid)
            assert _positions(editor) == {"A": (0.0, 0.0), "B": (300.0, 0.0)}
            assert _edge_pairs(editor, ids) == {("A", "B")}
            assert editor.view()["undo_depth"] == 0

        asyncio.run(scenario())

    def test_load_drops_dangling_connections(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            product = await store.get_product(pid)
            await store.insert(
                FLOW_CONNECTIONS,
                FlowConnectionRecord(product_id=pid, flow_version=product["flow_version"], source_id=ids["A"], target_id="ghost"),
            )
            editor = await FlowGraphEditor.load(store, pid)
            assert _edge_pairs(editor, ids) == {("A", "B")}
            assert editor.snapshot.dangling_edges() == []

        asyncio.run(scenario())

    def test_load_ignores_rows_of_other_versions(self, store, seed):
        async def scenario():
            pid, _ = await seed([("A", 0, 0)])
            await store.insert(FLOW_PAGES, FlowPageRecord(product_id=pid, flow_version="old", name="Stale"))
            editor = await FlowGraphEditor.load(store, pid)
            assert [n.name for n in editor.snapshot.nodes] == ["A"]

        asyncio.run(scenario())

    def test_load_unknown_product(self, store):
        with pytest.raises(NotFoundError):
            asyncio.run(FlowGraphEditor.load(store, "missing"))

    def test_registry_reuses_loaded_editor(self, store, seed):
        async def scenario():
            pid, _ = await seed([("A", 0, 0)])
            registry = EditorRegistry(store)
            first = await registry.get(pid)
            assert await registry.get(pid) is first
            assert registry.peek(pid) is first
            registry.drop(pid)
            assert registry.peek(pid) is None

        asyncio.run(scenario())

    def test_slow_load_does_not_hold_up_other_products(self, store, seed, monkeypatch):
        async def scenario():
            slow_pid, _ = await seed([("A", 0, 0)], name="Slow")
            fast_pid, _ = await seed([("B", 0, 0)], name="Fast")
            registry = EditorRegistry(store)
            release = asyncio.Event()
            get_product = store.get_product

            async def gated(product_id):
                if product_id == slow_pid:
                    await release.wait()
                return await get_product(product_id)

            monkeypatch.setattr(store, "get_product", gated)
            slow = asyncio.create_task(registry.get(slow_pid))
            await asyncio.sleep(0)

            fast = await asyncio.wait_for(registry.get(fast_pid), timeout=1)
            assert [n.name for n in fast.snapshot.nodes] == ["B"]
            assert not slow.done()

            release.set()
            assert [n.name for n in (await slow).snapshot.nodes] == ["A"]

        asyncio.run(scenario())


class TestUndoRedo:
    def test_move_then_delete_edge_then_undo_twice(self, store, seed):
        """A(0,0), B(300,0), A->B: undo walks back through the edge delete and then the move"""

        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            editor = await FlowGraphEditor.load(store, pid)

            await editor.move_node(ids["B"], 500, 0)
            assert editor.view()["undo_depth"] == 1

            await editor.delete_edge(ids["A->B"])
            assert editor.view()["undo_depth"] == 2
            assert editor.snapshot.edges == ()

            assert await editor.undo() is True
            assert _edge_pairs(editor, ids) == {("A", "B")}
            assert _positions(editor)["B"] == (500.0, 0.0)

            assert await editor.undo() is True
            assert _positions(editor)["B"] == (300.0, 0.0)
            assert editor.view()["undo_depth"] == 0

        asyncio.run(scenario())

    def test_undo_restores_exact_pre_mutation_snapshot(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            editor = await FlowGraphEditor.load(store, pid)

            before_add = editor.snapshot
            await editor.add_page({"name": "Settings"})
            before_move = editor.snapshot
            await editor.move_node(ids["A"], 40, 40)
            before_delete = editor.snapshot
            await editor.delete_node(ids["B"])

            await editor.undo()
            assert editor.snapshot == before_delete
            await editor.undo()
            assert editor.snapshot == before_move
            await editor.undo()
            assert editor.snapshot == before_add

        asyncio.run(scenario())

    def test_redo_after_undo_restores_pre_undo_state(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            await editor.connect(ids["A"], ids["B"])
            after = editor.snapshot

            await editor.undo()
            assert editor.snapshot.edges == ()
            assert await editor.redo() is True
            assert editor.snapshot == after
            assert editor.view()["redo_depth"] == 0

        asyncio.run(scenario())

    def test_mutation_after_undo_clears_redo(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            await editor.move_node(ids["A"], 10, 10)
            await editor.undo()
            assert editor.view()["can_redo"] is True

            await editor.move_node(ids["B"], 600, 0)
            assert editor.view()["can_redo"] is False
            snapshot = editor.snapshot
            assert await editor.redo() is False
            assert editor.snapshot == snapshot

        asyncio.run(scenario())

    def test_undo_and_redo_on_empty_stacks(self, store, seed):
        async def scenario():
            pid, _ = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            snapshot = editor.snapshot
            assert await editor.undo() is False
            assert await editor.redo() is False
            assert editor.snapshot == snapshot

        asyncio.run(scenario())

    def test_undo_does_not_revert_stored_rows(self, store, seed):
        async def scenario():
            pid, _ = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            await editor.add_page({"name": "Billing"})
            await editor.undo()
            assert [n.name for n in editor.snapshot.nodes] == ["A"]
            assert await store.db[FLOW_PAGES].count_documents({"product_id": pid}) == 2

            await editor.reload()
            assert sorted(n.name for n in editor.snapshot.nodes) == ["A", "Billing"]
            assert editor.view()["can_undo"] is False

        asyncio.run(scenario())


class TestInterleaving:
    """Undo and redo queue behind a mutation that is still waiting on the store"""

    def test_undo_waits_for_in_flight_connect(self, store, seed, monkeypatch):
        async def scenario():
            pid, ids = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            b = await editor.add_page({"name": "B"})

            release = asyncio.Event()
            insert = store.insert

            async def slow_insert(collection, record):
                await release.wait()
                return await insert(collection, record)

            monkeypatch.setattr(store, "insert", slow_insert)
            connecting = asyncio.create_task(editor.connect(ids["A"], b.id))
            await asyncio.sleep(0)
            undoing = asyncio.create_task(editor.undo())
            await asyncio.sleep(0)
            release.set()

            edge = await connecting
            assert await undoing is True

            # the queued undo reverted the connect, not the add
            assert [n.name for n in editor.snapshot.nodes] == ["A", "B"]
            assert editor.snapshot.edges == ()
            assert editor.snapshot.dangling_edges() == []
            assert await editor.redo() is True
            assert [e.id for e in editor.snapshot.edges] == [edge.id]

        asyncio.run(scenario())

    def test_failed_edge_delete_keeps_earlier_history(self, store, seed, monkeypatch):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            editor = await FlowGraphEditor.load(store, pid)
            await editor.move_node(ids["B"], 500, 0)

            release = asyncio.Event()

            async def failing_delete(collection, row_id):
                await release.wait()
                raise StoreError("Failed to delete flow_connections row.")

            monkeypatch.setattr(store, "delete", failing_delete)
            deleting = asyncio.create_task(editor.delete_edge(ids["A->B"]))
            await asyncio.sleep(0)
            undoing = asyncio.create_task(editor.undo())
            await asyncio.sleep(0)
            release.set()

            with pytest.raises(StoreError):
                await deleting
            assert await undoing is True

            # edge restored, then the move undone
            assert _edge_pairs(editor, ids) == {("A", "B")}
            assert _positions(editor)["B"] == (300.0, 0.0)
            assert editor.view()["undo_depth"] == 0
            assert editor.view()["redo_depth"] == 1

        asyncio.run(scenario())

    def test_commit_never_keeps_an_edge_to_a_missing_page(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            editor._commit(editor.snapshot.with_edge(FlowEdge(id="e1", source=ids["A"], target="ghost")))
            assert editor.snapshot.edges == ()
            assert editor.view()["undo_depth"] == 1

        asyncio.run(scenario())

    def test_history_discard_matches_by_identity(self):
        first, second = GraphSnapshot(), GraphSnapshot()
        history = EditorHistory(undo_stack=[first, second])
        history.discard(first)
        assert len(history.undo_stack) == 1
        assert history.undo_stack[0] is second


class TestMutations:
    def test_delete_node_removes_exactly_its_edges(self, store, seed):
        async def scenario():
            pid, ids = await seed(
                [("A", 0, 0), ("B", 300, 0), ("C", 600, 0)],
                [("A", "B"), ("B", "C"), ("A", "C")],
            )
            editor = await FlowGraphEditor.load(store, pid)
            await editor.delete_node(ids["B"])

            assert _edge_pairs(editor, ids) == {("A", "C")}
            assert await store.db[FLOW_PAGES].count_documents({"product_id": pid}) == 2
            assert await store.db[FLOW_CONNECTIONS].count_documents({"product_id": pid}) == 1

        asyncio.run(scenario())

    def test_delete_unknown_node(self, store, seed):
        async def scenario():
            pid, _ = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            with pytest.raises(NotFoundError):
                await editor.delete_node("nope")

        asyncio.run(scenario())

    def test_connect_persists_before_adding_edge(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            edge = await editor.connect(ids["A"], ids["B"])

            row = await store.get(FLOW_CONNECTIONS, edge.id)
            assert row["source_id"] == ids["A"]
            assert row["target_id"] == ids["B"]
            assert editor.snapshot.edge(edge.id) == edge

        asyncio.run(scenario())

    def test_connect_failure_changes_nothing(self, store, seed, monkeypatch):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)])
            editor = await FlowGraphEditor.load(store, pid)
            before = editor.snapshot

            async def broken(*args, **kwargs):
                raise StoreError("Failed to create connection.")

            monkeypatch.setattr(store, "insert", broken)
            with pytest.raises(StoreError):
                await editor.connect(ids["A"], ids["B"])
            assert editor.snapshot == before
            assert editor.view()["undo_depth"] == 0

        asyncio.run(scenario())

    def test_connect_validation(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            editor = await FlowGraphEditor.load(store, pid)
            with pytest.raises(ValidationError):
                await editor.connect(ids["A"], ids["A"])
            with pytest.raises(ValidationError):
                await editor.connect(ids["A"], ids["B"])
            with pytest.raises(NotFoundError):
                await editor.connect(ids["A"], "ghost")

        asyncio.run(scenario())

    def test_delete_edge_failure_restores_edge_and_history(self, store, seed, monkeypatch):
        async def scenario():
            pid, ids = await seed([("A", 0, 0), ("B", 300, 0)], [("A", "B")])
            editor = await FlowGraphEditor.load(store, pid)
            await editor.move_node(ids["B"], 450, 0)
            await editor.undo()
            before = editor.snapshot

            async def broken(*args, **kwargs):
                raise StoreError("Failed to delete connection.")

            monkeypatch.setattr(store, "delete", broken)
            with pytest.raises(StoreError):
                await editor.delete_edge(ids["A->B"])

            assert editor.snapshot == before
            assert editor.view()["undo_depth"] == 0
            assert editor.view()["redo_depth"] == 1

        asyncio.run(scenario())

    def test_move_failure_keeps_position_in_outbox(self, store, seed, monkeypatch):
        async def scenario():
            pid, ids = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)

            async def broken(*args, **kwargs):
                raise StoreError("Failed to update flow_pages row.")

            monkeypatch.setattr(store, "update", broken)
            await editor.move_node(ids["A"], 120, 80)
            assert _positions(editor)["A"] == (120.0, 80.0)
            assert editor.view()["pending_positions"] == [ids["A"]]

            monkeypatch.undo()
            assert await editor.flush_positions() == []
            row = await store.get(FLOW_PAGES, ids["A"])
            assert (row["position_x"], row["position_y"]) == (120.0, 80.0)

        asyncio.run(scenario())

    def test_update_page(self, store, seed):
        async def scenario():
            pid, ids = await seed([("A", 0, 0)])
            editor = await FlowGraphEditor.load(store, pid)

            with pytest.raises(ValidationError):
                await editor.update_page(ids["A"], {"name": "   "})

            node = await editor.update_page(ids["A"], {"name": "Dashboard", "features": ["Charts", " ", "Export"]})
            assert node.name == "Dashboard"
            assert node.features == ("Charts", "Export")
            assert (await store.get(FLOW_PAGES, ids["A"]))["name"] == "Dashboard"

            await editor.undo()
            assert editor.snapshot.node(ids["A"]).name == "A"

        asyncio.run(scenario())


class TestAddPage:
    def test_first_page_lands_at_default_slot(self):
        assert free_position([]) == (100.0, 100.0)

    def test_steps_diagonally_past_crowded_slots(self):
        nodes = [FlowNode(id="1", name="a", x=100, y=100), FlowNode(id="2", name="b", x=150, y=150)]
        assert free_position(nodes) == (300.0, 300.0)

    def test_added_pages_never_crowd_existing_ones(self, store, seed):
        async def scenario():
            pid, _ = await seed([("A", 0, 0), ("B", 300, 0), ("C", 120, 260)])
            editor = await FlowGraphEditor.load(store, pid)
            for i in range(6):
                existing = [(n.x, n.y) for n in editor.snapshot.nodes]
                node = await editor.add_page({"name": f"Page {i}"})
                assert not any(_crowded((node.x, node.y), p) for p in existing)

        asyncio.run(scenario())

    def test_name_is_required(self, store, seed, monkeypatch):
        async def scenario():
            pid, _ = await seed([])
            editor = await FlowGraphEditor.load(store, pid)

            async def unexpected(*args, **kwargs):
                raise AssertionError("store should not be called")

            monkeypatch.setattr(store, "insert", unexpected)
            with pytest.raises(ValidationError):
                await editor.add_page({"name": ""})

        asyncio.run(scenario())


class TestApplyLayout:
    LAYOUT = {
        "pages": [
            {"id": "landing", "name": "Landing", "position": {"x": 0, "y": 0}},
            {"id": "signup", "name": "Sign Up", "position": {"x": 250, "y": 0}},
            {"id": "dashboard", "name": "Dashboard", "position": {"x": 500, "y": 0}},
        ],
        "connections": [
            {"source": "landing", "target": "signup"},
            {"source": "signup", "target": "dashboard"},
            {"source": "signup", "target": "pricing"},
        ],
    }
    PAGES = [
        {"name": "Landing", "description": "Marketing page", "features": ["Hero"]},
        {"name": "Sign Up", "description": "Account creation", "features": []},
        {"name": "Dashboard", "description": "Overview", "features": ["Charts"]},
    ]

    def test_replaces_graph_with_three_pages_and_two_connections(self, store, seed):
        async def scenario():
            pid, _ = await seed([("Old", 0, 0), ("Older", 300, 0)], [("Old", "Older")])
            editor = await FlowGraphEditor.load(store, pid)
            await editor.move_node(editor.snapshot.nodes[0].id, 10, 10)

            counts = await editor.apply_layout(self.PAGES, self.LAYOUT)

            assert counts == {"pages": 3, "connections": 2}
            assert await store.db[FLOW_PAGES].count_documents({"product_id": pid}) == 3
            assert await store.db[FLOW_CONNECTIONS].count_documents({"product_id": pid}) == 2
            assert len(editor.snapshot.nodes) == 3
            assert len(editor.snapshot.edges) == 2
            assert editor.view()["can_undo"] is False

            landing = next(n for n in editor.snapshot.nodes if n.name == "Landing")
            assert landing.description == "Marketing page"
            assert landing.features == ("Hero",)
            ids = {n.id for n in editor.snapshot.nodes}
            assert all(e.source in ids and e.target in ids for e in editor.snapshot.edges)

        asyncio.run(scenario())

    def test_failed_staging_keeps_previous_graph(self, store, seed, monkeypatch):
        async def scenario():
            pid, _ = await seed([("Old", 0, 0), ("Older", 300, 0)], [("Old", "Older")])
            editor = await FlowGraphEditor.load(store, pid)
            version = (await store.get_product(pid))["flow_version"]
            before = editor.snapshot
            original = store.insert_many

            async def flaky(collection, records):
                if collection == FLOW_CONNECTIONS:
                    raise StoreError("Failed to create flow_connections rows.")
                return await original(collection, records)

            monkeypatch.setattr(store, "insert_many", flaky)
            with pytest.raises(StoreError):
                await editor.apply_layout(self.PAGES, self.LAYOUT)

            assert (await store.get_product(pid))["flow_version"] == version
            assert await store.db[FLOW_PAGES].count_documents({"product_id": pid}) == 2
            assert await store.db[FLOW_CONNECTIONS].count_documents({"product_id": pid}) == 1
            assert editor.snapshot == before

        asyncio.run(scenario())
