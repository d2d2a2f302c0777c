# tests/property/test_correlation_properties.py
"""Property-based tests for correlation context derivation and snapshots.

These tests verify invariants that must hold for every chain of hops:
- depth always equals len(chain) - 1
- every hop of a flow shares the root's primary correlation id
- correlation ids are unique per hop
- snapshots rebuild an equal context without adding a hop
- scoped installation always restores the previous context
"""

from hypothesis import given
from hypothesis import strategies as st

from tracelink.correlation.context import CorrelationContext
from tracelink.correlation.manager import CorrelationManager

components = st.text(alphabet="abcdefghijklmnopqrstuvwxyz_", min_size=1, max_size=12)

scalar_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(2**31), max_value=2**31),
    st.text(max_size=20),
)

metadata = st.dictionaries(st.text(min_size=1, max_size=10), scalar_values, max_size=5)


class TestDerivationProperties:
    @given(root=components, hops=st.lists(components, max_size=25))
    def test_depth_matches_chain(self, root: str, hops: list[str]) -> None:
        ctx = CorrelationContext.root(root)
        for hop in hops:
            ctx = ctx.derive(hop)
            assert ctx.depth == len(ctx.chain) - 1
        assert ctx.chain == (root, *hops)

    @given(root=components, hops=st.lists(components, min_size=1, max_size=25))
    def test_primary_is_stable_and_ids_unique(self, root: str, hops: list[str]) -> None:
        origin = CorrelationContext.root(root)
        seen = {origin.correlation_id}
        ctx = origin
        for hop in hops:
            child = ctx.derive(hop)
            assert child.primary_correlation_id == origin.correlation_id
            assert child.parent_correlation_id == ctx.correlation_id
            assert child.correlation_id not in seen
            seen.add(child.correlation_id)
            ctx = child

    @given(parent_meta=metadata, child_meta=metadata)
    def test_child_metadata_overlays_parent(self, parent_meta: dict[str, object], child_meta: dict[str, object]) -> None:
        child = CorrelationContext.root("web", metadata=parent_meta).derive("job", metadata=child_meta)
        assert dict(child.metadata) == {**parent_meta, **child_meta}


class TestSnapshotProperties:
    @given(root=components, hops=st.lists(components, max_size=10), meta=metadata)
    def test_round_trip(self, root: str, hops: list[str], meta: dict[str, object]) -> None:
        ctx = CorrelationContext.root(root, metadata=meta, session_id="sess", request_id="req")
        for hop in hops:
            ctx = ctx.derive(hop)
        assert CorrelationContext.from_snapshot(ctx.to_snapshot()) == ctx

    @given(hops=st.lists(components, max_size=10), receiver=components)
    def test_inherit_adds_exactly_one_hop(self, hops: list[str], receiver: str) -> None:
        manager = CorrelationManager("web")
        ctx = CorrelationContext.root("web")
        for hop in hops:
            ctx = ctx.derive(hop)

        try:
            inherited = manager.inherit_context(ctx.to_snapshot(), receiver)
        finally:
            manager.clear_context()

        assert inherited.depth == ctx.depth + 1
        assert inherited.chain == (*ctx.chain, receiver)
        assert inherited.primary_correlation_id == ctx.primary_correlation_id


class TestScopingProperties:
    @given(depth=st.integers(min_value=1, max_value=15))
    def test_nested_scopes_restore(self, depth: int) -> None:
        manager = CorrelationManager("web")
        contexts = [CorrelationContext.root(f"c{i}") for i in range(depth)]

        def enter(level: int) -> None:
            if level == depth:
                return
            before = manager.current_context()
            with manager.with_context(contexts[level]):
                assert manager.current_context() is contexts[level]
                enter(level + 1)
            assert manager.current_context() is before

        enter(0)
        assert manager.current_context() is None
