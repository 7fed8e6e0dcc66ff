"""世界线森林的树形布局。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, NamedTuple, Optional, Sequence

from worldline.constants import (
    LAYOUT_SESSION_GAP,
    LAYOUT_X_ORIGIN,
    LAYOUT_X_SPACING,
    LAYOUT_Y_SPACING,
)
from worldline.models import (
    LayoutEdge,
    LayoutNode,
    LayoutView,
    Node,
    Position,
    SaveType,
    SessionBand,
)


@dataclass(frozen=True)
class LayoutSettings:
    x_spacing: float = LAYOUT_X_SPACING
    y_spacing: float = LAYOUT_Y_SPACING
    x_origin: float = LAYOUT_X_ORIGIN
    session_gap: float = LAYOUT_SESSION_GAP


class _Placement(NamedTuple):
    y: float
    cursor: float
    seen: frozenset[str]
    placed: tuple[LayoutNode, ...]


@dataclass
class _Frame:
    node: Node
    pending: Iterator[Node]
    child_ys: list[float] = field(default_factory=list)


def group_by_session(
    nodes: Sequence[Node],
    session_filter: Optional[str] = None,
) -> dict[str, list[Node]]:
    sessions: dict[str, list[Node]] = {}
    for node in nodes:
        if session_filter and node.session_id != session_filter:
            continue
        sessions.setdefault(node.session_id, []).append(node)
    return sessions


def build_children(session_nodes: Sequence[Node]) -> tuple[dict[str, list[Node]], list[Node]]:
    """按时间排序，返回 父 storyId -> 子节点 映射与根节点列表。

    父节点不在本会话中（从未保存或已被淘汰）的节点视为根。
    """
    ordered = sorted(session_nodes, key=lambda n: n.timestamp)
    story_ids = {node.story_id for node in ordered if node.story_id is not None}
    children: dict[str, list[Node]] = {}
    roots: list[Node] = []
    for node in ordered:
        if node.parent_id and node.parent_id in story_ids:
            children.setdefault(node.parent_id, []).append(node)
        else:
            roots.append(node)
    return children, roots


def column_x(node: Node, settings: LayoutSettings) -> float:
    if node.type is SaveType.SETUP:
        return settings.x_origin
    depth = max(len(node.context.history), 1) - 1
    return depth * settings.x_spacing + settings.x_origin


def _children_of(node: Node, children: Mapping[str, Sequence[Node]]) -> Iterator[Node]:
    if node.story_id is None:
        return iter(())
    return iter(children.get(node.story_id, ()))


def _view(
    node: Node,
    y: float,
    overrides: Mapping[str, Position],
    settings: LayoutSettings,
    is_root: bool,
) -> LayoutNode:
    override = overrides.get(node.id)
    x = column_x(node, settings)
    if override is not None and override.x is not None:
        x = override.x
    final_y = override.y if override is not None and override.y is not None else y
    return LayoutNode(
        id=node.id,
        session_id=node.session_id,
        story_id=node.story_id,
        parent_id=node.parent_id,
        type=node.type,
        x=x,
        y=final_y,
        summary=node.summary,
        location=node.location,
        choice_label=node.choice_label,
        choice_text=node.choice_text,
        is_root=is_root,
    )


def _place(
    root: Node,
    children: Mapping[str, Sequence[Node]],
    cursor: float,
    seen: frozenset[str],
    overrides: Mapping[str, Position],
    settings: LayoutSettings,
) -> _Placement:
    """后序遍历一棵子树：叶子占用游标行，父节点取子节点 y 的均值。

    使用显式栈，链的深度不受解释器递归上限约束。
    """
    visited = set(seen)
    visited.add(root.id)
    placed: list[LayoutNode] = []
    stack = [_Frame(root, _children_of(root, children))]
    y = cursor
    while stack:
        frame = stack[-1]
        child = next((item for item in frame.pending if item.id not in visited), None)
        if child is not None:
            visited.add(child.id)
            stack.append(_Frame(child, _children_of(child, children)))
            continue

        stack.pop()
        if frame.child_ys:
            y = sum(frame.child_ys) / len(frame.child_ys)
        else:
            y = cursor
            cursor += settings.y_spacing
        placed.append(_view(frame.node, y, overrides, settings, is_root=not stack))
        # 父节点只按计算出的子节点位置居中，不受拖拽覆盖影响。
        if stack:
            stack[-1].child_ys.append(y)
    return _Placement(y=y, cursor=cursor, seen=frozenset(visited), placed=tuple(placed))


def layout_forest(
    nodes: Sequence[Node],
    *,
    session_filter: Optional[str] = None,
    overrides: Optional[Mapping[str, Position]] = None,
    settings: LayoutSettings = LayoutSettings(),
) -> LayoutView:
    """计算所有节点坐标与连线，每个会话占据一条纵向区间。"""
    overrides = overrides or {}
    view = LayoutView()
    offset = 0.0
    for session_id, session_nodes in group_by_session(nodes, session_filter).items():
        children, roots = build_children(session_nodes)
        cursor = offset
        seen: frozenset[str] = frozenset()
        placed: list[LayoutNode] = []
        root_y: Optional[float] = None

        pending = list(roots)
        while True:
            for root in pending:
                if root.id in seen:
                    continue
                result = _place(root, children, cursor, seen, overrides, settings)
                # 与存档画布一致：取最后一个根节点所在行。
                root_y = result.y
                cursor = result.cursor + settings.y_spacing
                seen = result.seen
                placed.extend(result.placed)
            # 父链成环的节点无法从任何根到达。
            pending = [
                node
                for node in sorted(session_nodes, key=lambda n: n.timestamp)
                if node.id not in seen
            ][:1]
            if not pending:
                break

        by_id = {item.id: item for item in placed}
        for item in placed:
            if item.story_id is None:
                continue
            for child in children.get(item.story_id, ()):
                if child.id in by_id:
                    view.edges.append(
                        LayoutEdge(from_id=item.id, to=child.id, is_freeform=child.is_freeform)
                    )

        view.nodes.extend(placed)
        view.sessions.append(
            SessionBand(
                session_id=session_id,
                root_y=root_y if root_y is not None else offset,
                top=offset,
                bottom=cursor,
                node_count=len(placed),
            )
        )
        offset = cursor + settings.session_gap
    return view


class GraphLayoutEngine:
    """保存用户拖拽的位置，按需对存档做布局。"""

    def __init__(self, settings: LayoutSettings | None = None) -> None:
        self.settings = settings or LayoutSettings()
        self._overrides: dict[str, Position] = {}

    @property
    def overrides(self) -> dict[str, Position]:
        return dict(self._overrides)

    def set_position(self, node_id: str, position: Position) -> None:
        self._overrides[node_id] = position.model_copy()

    def clear_position(self, node_id: str) -> bool:
        return self._overrides.pop(node_id, None) is not None

    def forget(self, node_ids: Iterable[str]) -> int:
        """删除节点后清理其拖拽位置，返回清掉的条数。"""
        return sum(1 for node_id in node_ids if self.clear_position(node_id))

    def reset_positions(self) -> None:
        self._overrides.clear()

    def layout(self, nodes: Sequence[Node], session_filter: Optional[str] = None) -> LayoutView:
        return layout_forest(
            nodes,
            session_filter=session_filter,
            overrides=self._overrides,
            settings=self.settings,
        )
