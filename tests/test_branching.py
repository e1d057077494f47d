import random
from datetime import datetime, timedelta, timezone

import pytest

from chatflow.branching import (
    build_branch_groups,
    build_conversation_view,
    ensure_branch_root_id,
    prune_branch_selections,
    select_branch,
)
from chatflow.schemas import ThreadItem

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _item(item_id: str, minute: int, parent_id=None, branch_root_id=None) -> ThreadItem:
    return ThreadItem(
        id=item_id,
        thread_id="t1",
        parent_id=parent_id,
        branch_root_id=branch_root_id,
        query=item_id,
        created_at=T0 + timedelta(minutes=minute),
    )


def _tree():
    # a -> b (with alternative b2) -> c under b
    return [
        _item("a", 0, branch_root_id="a"),
        _item("b", 1, parent_id="a", branch_root_id="b"),
        _item("c", 2, parent_id="b", branch_root_id="c"),
        _item("b2", 3, parent_id="a", branch_root_id="b"),
    ]


def test_ensure_branch_root_id_defaults():
    assert ensure_branch_root_id(_item("x", 0)).branch_root_id == "x"
    assert ensure_branch_root_id(_item("y", 0, parent_id="x")).branch_root_id == "x"
    assert ensure_branch_root_id(_item("z", 0, branch_root_id="r")).branch_root_id == "r"


def test_groups_are_in_creation_order():
    groups = build_branch_groups(_tree())
    assert list(groups) == ["a", "b", "c"]
    assert [m.id for m in groups["b"]] == ["b", "b2"]


def test_prune_defaults_to_latest_member_and_drops_stale():
    pruned = prune_branch_selections(_tree(), {"b": "gone", "missing": "x"})
    assert pruned == {"a": "a", "b": "b2", "c": "c"}


def test_view_follows_latest_alternative_by_default():
    items = _tree()
    view = build_conversation_view(items, prune_branch_selections(items, {}))
    assert [i.id for i in view] == ["a", "b2"]


def test_view_follows_selected_alternative():
    items = _tree()
    selections = select_branch(items, {}, "b", "b")
    assert selections["b"] == "b"
    assert [i.id for i in build_conversation_view(items, selections)] == ["a", "b", "c"]


def test_select_branch_accepts_member_id_as_key():
    items = _tree()
    selections = select_branch(items, {}, "b2", "b")
    assert selections["b"] == "b"


def test_select_branch_ignores_foreign_member():
    items = _tree()
    selections = select_branch(items, {"b": "b"}, "b", "c")
    assert selections["b"] == "b"


def test_view_keeps_exactly_one_member_per_group():
    items = _tree() + [_item("b3", 4, parent_id="a", branch_root_id="b")]
    selections = select_branch(items, {}, "b", "b3")
    view = build_conversation_view(items, selections)
    assert [i.id for i in view] == ["a", "b3"]
    roots = [i.branch_root_id for i in view]
    assert len(roots) == len(set(roots))


def test_reply_on_parent_group_brings_parent_along():
    # Legacy items without a branch root default onto their parent's group.
    items = [_item("a", 0), _item("b", 1, parent_id="a")]
    view = build_conversation_view(items, {})
    assert [i.id for i in view] == ["a", "b"]


def _check_selections(items, selections):
    groups = build_branch_groups(items)
    assert set(selections) == set(groups)
    for root_id, selected_id in selections.items():
        assert selected_id in {m.id for m in groups[root_id]}
    view = build_conversation_view(items, selections)
    roots = [m.branch_root_id for m in view]
    assert len(roots) == len(set(roots))
    assert {m.id for m in view} <= {m.id for m in items}


@pytest.mark.parametrize("seed", [1, 7, 42, 2026])
def test_random_edits_keep_selections_on_live_members(seed):
    rng = random.Random(seed)
    items = []
    selections = {}
    for step in range(200):
        action = rng.choice(["create", "alternative", "update", "delete", "select"]) if items else "create"
        if action == "create":
            parent = rng.choice(items) if items and rng.random() < 0.8 else None
            item_id = f"i{step}"
            items.append(_item(item_id, step, parent_id=parent.id if parent else None, branch_root_id=item_id))
        elif action == "alternative":
            sibling = rng.choice(items)
            items.append(_item(f"i{step}", step, parent_id=sibling.parent_id, branch_root_id=sibling.branch_root_id))
        elif action == "update":
            index = rng.randrange(len(items))
            items[index] = items[index].model_copy(update={"query": f"edited {step}"})
        elif action == "delete":
            items.pop(rng.randrange(len(items)))
        else:
            target = rng.choice(items)
            selections = select_branch(items, selections, target.branch_root_id, target.id)
            assert selections[target.branch_root_id] == target.id
        selections = prune_branch_selections(items, selections)
        _check_selections(items, selections)
