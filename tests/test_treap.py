"""Tests for the persistent order-statistics treap."""

import random

import pytest

from storyrank.utils import treap


def tree_of(keys):
    root = None
    for key in keys:
        root = treap.insert(root, key, f"v{key}")
    return root


def test_in_order_iteration_and_positions():
    keys = list(range(50))
    random.Random(3).shuffle(keys)
    root = tree_of(keys)

    assert [node.key for node in treap.iter_nodes(root)] == list(range(50))
    assert treap.size(root) == 50
    assert treap.rank(root, 17) == 17
    assert treap.rank(root, 99) is None
    assert treap.select(root, 42).key == 42
    assert treap.slice_values(root, 45, 10) == [f"v{k}" for k in range(45, 50)]
    assert treap.slice_values(root, 50, 10) == []
    assert treap.check(root) == []


def test_select_out_of_range():
    with pytest.raises(IndexError):
        treap.select(tree_of([1, 2]), 2)


def test_duplicate_insert_and_missing_delete_raise():
    root = tree_of([1, 2, 3])

    with pytest.raises(KeyError):
        treap.insert(root, 2, "again")
    with pytest.raises(KeyError):
        treap.delete(root, 9)


def test_old_roots_survive_updates():
    before = tree_of([5, 1, 9])

    after = treap.delete(treap.insert(before, 7, "v7"), 1)

    assert [node.key for node in treap.iter_nodes(before)] == [1, 5, 9]
    assert [node.key for node in treap.iter_nodes(after)] == [5, 7, 9]
    assert treap.check(before) == []
    assert treap.check(after) == []


def test_check_reports_broken_size():
    root = tree_of([1, 2, 3, 4])
    broken = treap.Node(root.key, root.value, root.priority, root.left, root.right)
    broken.size += 1

    assert any("size" in problem for problem in treap.check(broken))
