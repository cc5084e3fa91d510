"""
Persistent size-augmented treap.

Nodes are never mutated after construction: every insert or delete copies the
path from the root to the change and returns a new root, so any root captured
earlier remains a complete, consistent tree. Each node stores the size of its
subtree, which gives rank-by-key and key-by-rank in O(log n) expected time.

All functions take and return roots; ``None`` is the empty tree. Keys must be
totally ordered and unique within one tree.
"""

import random
from typing import Any, Iterator, List, Optional, Tuple

_random = random.Random()


class Node:
    __slots__ = ('key', 'value', 'priority', 'left', 'right', 'size')

    def __init__(self, key, value, priority: float, left: "Node" = None, right: "Node" = None):
        self.key = key
        self.value = value
        self.priority = priority
        self.left = left
        self.right = right
        self.size = 1 + size(left) + size(right)

    def __repr__(self):
        return f"<Node(key={self.key!r}, size={self.size})>"


def size(node: Optional[Node]) -> int:
    return node.size if node is not None else 0


def _copy(node: Node, left: Optional[Node], right: Optional[Node]) -> Node:
    return Node(node.key, node.value, node.priority, left, right)


def _split(node: Optional[Node], key) -> Tuple[Optional[Node], Optional[Node]]:
    """Split into (keys < key, keys >= key)."""
    if node is None:
        return None, None
    if node.key < key:
        left, right = _split(node.right, key)
        return _copy(node, node.left, left), right
    left, right = _split(node.left, key)
    return left, _copy(node, right, node.right)


def _merge(left: Optional[Node], right: Optional[Node]) -> Optional[Node]:
    """Merge two trees where every key in ``left`` precedes every key in ``right``."""
    if left is None:
        return right
    if right is None:
        return left
    if left.priority > right.priority:
        return _copy(left, left.left, _merge(left.right, right))
    return _copy(right, _merge(left, right.left), right.right)


def insert(root: Optional[Node], key, value, priority: float = None) -> Node:
    """Return a new root with ``key`` inserted. Raises KeyError if already present."""
    if priority is None:
        priority = _random.random()
    return _insert(root, Node(key, value, priority))


def _insert(node: Optional[Node], new: Node) -> Node:
    if node is None:
        return new
    if node.key == new.key:
        raise KeyError(new.key)
    if new.priority > node.priority:
        if find(node, new.key) is not None:
            raise KeyError(new.key)
        left, right = _split(node, new.key)
        return Node(new.key, new.value, new.priority, left, right)
    if new.key < node.key:
        return _copy(node, _insert(node.left, new), node.right)
    return _copy(node, node.left, _insert(node.right, new))


def delete(root: Optional[Node], key) -> Optional[Node]:
    """Return a new root without ``key``. Raises KeyError if absent."""
    if root is None:
        raise KeyError(key)
    if key < root.key:
        return _copy(root, delete(root.left, key), root.right)
    if root.key < key:
        return _copy(root, root.left, delete(root.right, key))
    return _merge(root.left, root.right)


def find(root: Optional[Node], key) -> Optional[Node]:
    node = root
    while node is not None:
        if key < node.key:
            node = node.left
        elif node.key < key:
            node = node.right
        else:
            return node
    return None


def rank(root: Optional[Node], key) -> Optional[int]:
    """Zero-based position of ``key``, or None when absent."""
    position = 0
    node = root
    while node is not None:
        if key < node.key:
            node = node.left
        elif node.key < key:
            position += size(node.left) + 1
            node = node.right
        else:
            return position + size(node.left)
    return None


def select(root: Optional[Node], index: int) -> Node:
    """Node at zero-based position ``index``. Raises IndexError when out of range."""
    if index < 0 or index >= size(root):
        raise IndexError(index)
    node = root
    while True:
        left_size = size(node.left)
        if index < left_size:
            node = node.left
        elif index == left_size:
            return node
        else:
            index -= left_size + 1
            node = node.right


def iter_from(root: Optional[Node], index: int) -> Iterator[Node]:
    """In-order iteration starting at zero-based position ``index``."""
    stack: List[Node] = []
    node = root
    # Descend to the start position, stacking nodes whose key follows it
    while node is not None:
        left_size = size(node.left)
        if index < left_size:
            stack.append(node)
            node = node.left
        elif index == left_size:
            stack.append(node)
            break
        else:
            index -= left_size + 1
            node = node.right

    while stack:
        node = stack.pop()
        yield node
        child = node.right
        while child is not None:
            stack.append(child)
            child = child.left


def slice_values(root: Optional[Node], offset: int, limit: int) -> List[Any]:
    """Values at positions [offset, offset + limit)."""
    if offset >= size(root) or limit <= 0:
        return []
    values = []
    for node in iter_from(root, offset):
        values.append(node.value)
        if len(values) >= limit:
            break
    return values


def iter_nodes(root: Optional[Node]) -> Iterator[Node]:
    return iter_from(root, 0)


def check(root: Optional[Node]) -> List[str]:
    """Return a list of structural problems (empty when the tree is sound)."""
    problems: List[str] = []

    def walk(node, low, high) -> int:
        if node is None:
            return 0
        if low is not None and not (low < node.key):
            problems.append(f"key {node.key!r} out of order (not after {low!r})")
        if high is not None and not (node.key < high):
            problems.append(f"key {node.key!r} out of order (not before {high!r})")
        for child in (node.left, node.right):
            if child is not None and child.priority > node.priority:
                problems.append(f"heap order broken below {node.key!r}")
        counted = 1 + walk(node.left, low, node.key) + walk(node.right, node.key, high)
        if counted != node.size:
            problems.append(f"size of {node.key!r} is {node.size}, counted {counted}")
        return counted

    walk(root, None, None)
    return problems
