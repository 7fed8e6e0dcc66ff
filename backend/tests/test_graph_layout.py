from shared_stubs import build_node

from worldline.models import Position, SaveType
from worldline.utils.graph_layout import (
    GraphLayoutEngine,
    LayoutSettings,
    build_children,
    layout_forest,
)


def by_id(view):
    return {node.id: node for node in view.nodes}


def branching_session():
    # b1 -> b2 -> (b3, b4); b4 is a freeform branch
    return [
        build_node("n1", "s1", "b1", timestamp=1, depth=1),
        build_node("n2", "s1", "b2", "b1", timestamp=2, depth=2),
        build_node("n3", "s1", "b3", "b2", timestamp=3, depth=3),
        build_node("n4", "s1", "b4", "b2", timestamp=4, depth=3, choice_label=""),
    ]


def test_leaves_take_successive_rows_and_parents_center():
    view = layout_forest(branching_session())
    placed = by_id(view)

    assert placed["n3"].y == 0
    assert placed["n4"].y == 150
    assert placed["n2"].y == 75
    assert placed["n1"].y == 75
    assert placed["n1"].is_root
    assert not placed["n3"].is_root


def test_columns_follow_history_depth():
    placed = by_id(layout_forest(branching_session()))
    assert placed["n1"].x == 100
    assert placed["n2"].x == 350
    assert placed["n3"].x == 600


def test_setup_nodes_pinned_to_first_column():
    setup = build_node("s", "s1", "b9", timestamp=1, depth=5, save_type=SaveType.SETUP)
    assert by_id(layout_forest([setup]))["s"].x == 100


def test_edges_carry_freeform_flag():
    view = layout_forest(branching_session())
    edges = {(edge.from_id, edge.to): edge.is_freeform for edge in view.edges}
    assert edges == {("n1", "n2"): False, ("n2", "n3"): False, ("n2", "n4"): True}
    assert view.to_record()["edges"][0].keys() >= {"from", "to", "isFreeform"}


def test_sibling_leaves_never_share_a_row():
    parent = build_node("p", "s1", "root", timestamp=0)
    children = [build_node(f"c{i}", "s1", f"k{i}", "root", timestamp=i + 1) for i in range(6)]
    placed = by_id(layout_forest([parent, *children]))
    ys = [placed[f"c{i}"].y for i in range(6)]
    assert len(set(ys)) == 6


def test_unresolved_parent_becomes_root():
    # ancestor b0 was evicted by retention
    orphan = build_node("n2", "s1", "b2", "b0", timestamp=2, depth=2)
    other_root = build_node("n9", "s1", "z1", timestamp=5)
    children, roots = build_children([other_root, orphan])
    assert [n.id for n in roots] == ["n2", "n9"]
    assert children == {}

    placed = by_id(layout_forest([other_root, orphan]))
    assert placed["n2"].y == 0
    # each root gets its own band: leaf row plus one spacing step
    assert placed["n9"].y == 300


def test_sessions_are_stacked_with_a_gap():
    first = build_node("a", "s1", "b1", timestamp=1)
    second = build_node("b", "s2", "c1", timestamp=1)
    view = layout_forest([first, second])
    placed = by_id(view)

    assert placed["a"].y == 0
    # s1 band ends at 300, then the 200 gap
    assert placed["b"].y == 500
    assert [band.session_id for band in view.sessions] == ["s1", "s2"]
    assert view.sessions[1].top == 500


def test_focus_mode_filters_one_session():
    nodes = [build_node("a", "s1", "b1"), build_node("b", "s2", "c1")]
    view = layout_forest(nodes, session_filter="s2")
    assert [n.id for n in view.nodes] == ["b"]
    assert view.nodes[0].y == 0


def test_overrides_only_move_their_node():
    engine = GraphLayoutEngine()
    baseline = by_id(engine.layout(branching_session()))

    engine.set_position("n3", Position(x=999, y=-40))
    engine.set_position("n4", Position(y=500))
    moved = by_id(engine.layout(branching_session()))

    assert (moved["n3"].x, moved["n3"].y) == (999, -40)
    assert moved["n4"].x == baseline["n4"].x
    assert moved["n4"].y == 500
    assert moved["n2"].y == baseline["n2"].y
    assert moved["n1"].y == baseline["n1"].y

    assert engine.clear_position("n3")
    assert not engine.clear_position("n3")
    assert by_id(engine.layout(branching_session()))["n3"].y == baseline["n3"].y


def test_parent_cycle_is_still_laid_out():
    first = build_node("n1", "s1", "b1", "b2", timestamp=1)
    second = build_node("n2", "s1", "b2", "b1", timestamp=2)
    view = layout_forest([first, second])
    assert {n.id for n in view.nodes} == {"n1", "n2"}


def test_custom_spacing():
    settings = LayoutSettings(x_spacing=10, y_spacing=20, x_origin=0, session_gap=5)
    placed = by_id(layout_forest(branching_session(), settings=settings))
    assert placed["n4"].y == 20
    assert placed["n3"].x == 20


def test_session_band_reports_last_root_row():
    first = build_node("n1", "s1", "b1", timestamp=1)
    second = build_node("n2", "s1", "c1", timestamp=2)
    band = layout_forest([first, second]).sessions[0]
    assert band.root_y == 300
    assert (band.top, band.bottom) == (0, 600)


def test_long_chain_is_laid_out_without_recursion():
    chain = [build_node("n0", "s1", "b0", timestamp=0)]
    chain += [
        build_node(f"n{i}", "s1", f"b{i}", f"b{i - 1}", timestamp=i) for i in range(1, 1500)
    ]
    view = layout_forest(chain)

    assert len(view.nodes) == 1500
    assert len(view.edges) == 1499
    assert {node.y for node in view.nodes} == {0}
    assert [node.id for node in view.nodes if node.is_root] == ["n0"]
    # post-order: the leaf comes first, the root last
    assert (view.nodes[0].id, view.nodes[-1].id) == ("n1499", "n0")


def test_forget_drops_overrides_of_deleted_nodes():
    engine = GraphLayoutEngine()
    engine.set_position("a", Position(x=1))
    engine.set_position("b", Position(y=2))
    assert engine.forget(["a", "missing"]) == 1
    assert set(engine.overrides) == {"b"}
