"""Branch bookkeeping for thread items.

Alternative answers to the same turn share a ``branch_root_id``. Exactly one
member of each group is selected; the conversation view is the single path
that results from following the selected member of every group.
"""

from typing import Dict, Iterable, List, Mapping, Optional

from .schemas import ThreadItem


def resolve_branch_root_id(item: ThreadItem) -> str:
    return item.branch_root_id or item.parent_id or item.id


def ensure_branch_root_id(item: ThreadItem, fallback: Optional[str] = None) -> ThreadItem:
    if item.branch_root_id:
        return item
    return item.model_copy(update={"branch_root_id": fallback or resolve_branch_root_id(item)})


def _creation_order(items: Iterable[ThreadItem]) -> List[ThreadItem]:
    # sorted() is stable, so items created in the same instant keep insertion order
    return sorted(items, key=lambda item: item.created_at)


def build_branch_groups(items: Iterable[ThreadItem]) -> Dict[str, List[ThreadItem]]:
    groups: Dict[str, List[ThreadItem]] = {}
    for item in _creation_order(items):
        groups.setdefault(resolve_branch_root_id(item), []).append(item)
    return groups


def prune_branch_selections(
    items: Iterable[ThreadItem],
    selections: Mapping[str, str],
) -> Dict[str, str]:
    """Return a selection map where every key points at a live group member.

    Stale selections fall back to the most recently created member; keys of
    groups that no longer exist are dropped; groups without a selection get
    their most recent member.
    """
    groups = build_branch_groups(items)
    pruned: Dict[str, str] = {}
    for root_id, members in groups.items():
        member_ids = [m.id for m in members]
        selected = selections.get(root_id)
        pruned[root_id] = selected if selected in member_ids else member_ids[-1]
    return pruned


def select_branch(
    items: Iterable[ThreadItem],
    selections: Mapping[str, str],
    branch_root_id: str,
    selected_id: str,
) -> Dict[str, str]:
    items = list(items)
    groups = build_branch_groups(items)
    root_id = branch_root_id
    if root_id not in groups:
        # Callers sometimes pass a member id instead of the group key.
        for key, members in groups.items():
            if any(m.id == branch_root_id for m in members):
                root_id = key
                break
    updated = dict(selections)
    members = groups.get(root_id)
    if not members:
        updated.pop(branch_root_id, None)
    elif any(m.id == selected_id for m in members):
        updated[root_id] = selected_id
    return prune_branch_selections(items, updated)


def build_conversation_view(
    items: Iterable[ThreadItem],
    selections: Mapping[str, str],
) -> List[ThreadItem]:
    """Linear path through the thread following the selected siblings.

    Groups are visited in order of their first creation. A group joins the
    path only when its selected member has no parent in the thread, or its
    parent is already on the path. A reply that defaulted onto its parent's
    group brings that parent along.
    """
    items = list(items)
    known_ids = {item.id for item in items}
    groups = build_branch_groups(items)
    path: List[ThreadItem] = []
    on_path = set()
    for root_id, members in groups.items():
        by_id = {m.id: m for m in members}
        chosen = by_id.get(selections.get(root_id, ""), members[-1])
        chain = [chosen]
        while chain[0].parent_id in by_id and chain[0].parent_id not in {c.id for c in chain}:
            chain.insert(0, by_id[chain[0].parent_id])
        parent_id = chain[0].parent_id
        if parent_id and parent_id in known_ids and parent_id not in on_path:
            continue
        for item in chain:
            if item.id not in on_path:
                path.append(item)
                on_path.add(item.id)
    return path
