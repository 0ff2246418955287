"""
Computation Graph: Reverse-Mode Differentiation
===============================================

A Graph is an arena that owns every node of one computation. Nodes are
appended in construction order and refer to their inputs by index, so a
node can only ever depend on nodes built before it and construction order
is always a valid topological order.

Topology (node kind, input indices, constant or exponent, label) lives in
plain lists. The per-pass scratch state lives in NumPy arrays indexed the
same way:

    values     cached result of the last forward pass
    gradients  accumulated d(output)/d(node) from backward passes
    fresh      whether the cached value reflects the current inputs

A typical cycle:

    >>> g = Graph()
    >>> x = g.input(2.0, label='x')
    >>> y = x * x + x * 3
    >>> g.forward_pass()
    >>> y.backward()
    >>> x.gradient
    7.0

Gradients ACCUMULATE across backward passes. Call zero_grad() before a new
backward pass unless you want the contributions summed.
"""

from __future__ import annotations
import enum
import logging
import math
import numpy as np
from typing import Iterable, List, Optional, Tuple, Union

from .errors import (
    DomainError,
    Numeric,
    Operation,
    check_divisor,
    check_log_argument,
    real_power,
)


logger = logging.getLogger(__name__)

DEFAULT_SEED = 1.0

# How Power.backward treats a base that is exactly zero:
#   skip   - propagate nothing (legacy behaviour, approximate for n <= 1)
#   strict - exact n * 0^(n-1) for n >= 1 and 0 for n == 0,
#            DomainError for any other n < 1
ZERO_BASE_POLICIES = ('skip', 'strict')

_INITIAL_CAPACITY = 16


class NodeKind(enum.Enum):
    """The closed set of node kinds a Graph can hold."""

    INPUT = 'input'
    CONSTANT = 'const'
    ADD = '+'
    SUBTRACT = '-'
    MULTIPLY = '*'
    DIVIDE = '/'
    POWER = 'pow'
    LOG = 'log'


_LEAVES = (NodeKind.INPUT, NodeKind.CONSTANT)


class GraphNode:
    """
    A non-owning handle to one node of a Graph.

    Handles are cheap: two handles with the same graph and index compare
    equal. All state is read from and written to the owning Graph.

    Example:
        >>> g = Graph()
        >>> x = g.input(3.0, label='x')
        >>> y = (x ** 2).log()
        >>> g.forward_pass()
        >>> y.backward()
        >>> round(x.gradient, 6)  # d/dx ln(x^2) = 2/x
        0.666667
    """

    __slots__ = ('graph', 'index')

    def __init__(self, graph: Graph, index: int) -> None:
        self.graph = graph
        self.index = index

    def __repr__(self) -> str:
        """Value and gradient once computed, otherwise the node's operation."""
        if not self.graph._fresh[self.index]:
            operands = ', '.join(node.label for node in self.inputs)
            return f"GraphNode({self.label}={_op_label(self)}({operands}), stale)"
        return (
            f"GraphNode({self.label}={self.value:.4f}, "
            f"grad={self.gradient:.4f})"
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GraphNode):
            return NotImplemented
        return self.graph is other.graph and self.index == other.index

    def __hash__(self) -> int:
        return hash((id(self.graph), self.index))

    @property
    def kind(self) -> NodeKind:
        """Which operation this node performs."""
        return self.graph._kinds[self.index]

    @property
    def label(self) -> str:
        """Name used in errors, logs and draw_graph (v<index> by default)."""
        return self.graph._labels[self.index]

    @property
    def inputs(self) -> Tuple[GraphNode, ...]:
        """Handles to the nodes this one reads, in operand order."""
        return tuple(GraphNode(self.graph, j) for j in self.graph._args[self.index])

    @property
    def value(self) -> float:
        """Cached value; only meaningful after a forward pass."""
        return float(self.graph._values[self.index])

    @property
    def gradient(self) -> float:
        """Accumulated gradient; only meaningful after a backward pass."""
        return float(self.graph._grads[self.index])

    def forward(self) -> None:
        """Recompute this node's value from its inputs' cached values."""
        self.graph._forward_node(self.index)

    def backward(self, seed: float = DEFAULT_SEED) -> None:
        """Run a backward pass with this node as the output."""
        self.graph.backward(self, seed)

    def set_value(self, value: Numeric) -> None:
        """Rebind an input node."""
        self.graph.set_value(self, value)

    # =========================================================================
    # Builder shortcuts
    # =========================================================================

    def _coerce(self, other: Union[GraphNode, Numeric]) -> GraphNode:
        """Wrap plain numbers as constants of the same graph."""
        if isinstance(other, GraphNode):
            return other
        return self.graph.constant(other)

    def __add__(self, other: Union[GraphNode, Numeric]) -> GraphNode:
        """Addition node: self + other."""
        return self.graph.add(self, self._coerce(other))

    def __radd__(self, other: Numeric) -> GraphNode:
        """Handle numeric + GraphNode."""
        return self.graph.add(self._coerce(other), self)

    def __sub__(self, other: Union[GraphNode, Numeric]) -> GraphNode:
        """Subtraction node: self - other."""
        return self.graph.subtract(self, self._coerce(other))

    def __rsub__(self, other: Numeric) -> GraphNode:
        """Handle numeric - GraphNode."""
        return self.graph.subtract(self._coerce(other), self)

    def __mul__(self, other: Union[GraphNode, Numeric]) -> GraphNode:
        """Product node: self * other."""
        return self.graph.multiply(self, self._coerce(other))

    def __rmul__(self, other: Numeric) -> GraphNode:
        """Handle numeric * GraphNode."""
        return self.graph.multiply(self._coerce(other), self)

    def __truediv__(self, other: Union[GraphNode, Numeric]) -> GraphNode:
        """Division node: self / other."""
        return self.graph.divide(self, self._coerce(other))

    def __rtruediv__(self, other: Numeric) -> GraphNode:
        """Handle numeric / GraphNode."""
        return self.graph.divide(self._coerce(other), self)

    def __pow__(self, n: Numeric) -> GraphNode:
        """Power node: self ** n for a constant exponent n."""
        return self.graph.power(self, n)

    def log(self) -> GraphNode:
        """Natural log node: ln(self)."""
        return self.graph.log(self)


class Graph:
    """
    Arena owning all nodes of a reverse-mode computation graph.

    Args:
        zero_base_policy: How the backward rule of a power node handles a
            base value of exactly zero. One of ZERO_BASE_POLICIES.

    Raises:
        ValueError: If zero_base_policy is not recognised.
    """

    def __init__(self, zero_base_policy: str = 'skip') -> None:
        if zero_base_policy not in ZERO_BASE_POLICIES:
            raise ValueError(
                f"zero_base_policy must be one of {ZERO_BASE_POLICIES}, "
                f"got {zero_base_policy!r}"
            )
        self.zero_base_policy = zero_base_policy

        self._kinds: List[NodeKind] = []
        self._args: List[Tuple[int, ...]] = []
        self._params: List[float] = []
        self._labels: List[str] = []

        self._values = np.zeros(_INITIAL_CAPACITY, dtype=np.float64)
        self._grads = np.zeros(_INITIAL_CAPACITY, dtype=np.float64)
        self._fresh = np.zeros(_INITIAL_CAPACITY, dtype=bool)

    def __len__(self) -> int:
        return len(self._kinds)

    def __repr__(self) -> str:
        return f"Graph(nodes={len(self)}, zero_base_policy={self.zero_base_policy!r})"

    def node(self, index: int) -> GraphNode:
        """Return a handle to the node at `index`."""
        if not 0 <= index < len(self):
            raise IndexError(f"node index {index} out of range for {len(self)} nodes")
        return GraphNode(self, index)

    def nodes(self) -> List[GraphNode]:
        """All nodes in construction (topological) order."""
        return [GraphNode(self, i) for i in range(len(self))]

    # =========================================================================
    # Construction
    # =========================================================================

    def _grow(self) -> None:
        capacity = 2 * len(self._values)
        for name in ('_values', '_grads', '_fresh'):
            old = getattr(self, name)
            new = np.zeros(capacity, dtype=old.dtype)
            new[:len(old)] = old
            setattr(self, name, new)

    def _own(self, node: GraphNode) -> int:
        if not isinstance(node, GraphNode):
            raise TypeError(f"expected a GraphNode, got {type(node).__name__}")
        if node.graph is not self:
            raise ValueError(f"{node.label} belongs to a different graph")
        return node.index

    def _append(
        self,
        kind: NodeKind,
        args: Tuple[int, ...],
        param: float,
        label: str,
    ) -> GraphNode:
        index = len(self)
        if index == len(self._values):
            self._grow()
        self._kinds.append(kind)
        self._args.append(args)
        self._params.append(param)
        self._labels.append(label or f'v{index}')
        self._grads[index] = 0.0
        if kind in _LEAVES:
            self._values[index] = param
            self._fresh[index] = True
        else:
            self._values[index] = 0.0
            self._fresh[index] = False
        return GraphNode(self, index)

    def input(self, initial_value: Numeric, label: str = '') -> GraphNode:
        """Create a differentiation variable holding `initial_value`."""
        return self._append(NodeKind.INPUT, (), _as_float(initial_value), label)

    def constant(self, c: Numeric, label: str = '') -> GraphNode:
        """Create a constant. Constants never accumulate gradient."""
        return self._append(NodeKind.CONSTANT, (), _as_float(c), label)

    def add(self, a: GraphNode, b: GraphNode, label: str = '') -> GraphNode:
        """
        Create a + b.

        Backward: the incoming gradient flows unchanged to both operands.
        """
        return self._append(NodeKind.ADD, (self._own(a), self._own(b)), 0.0, label)

    def subtract(self, a: GraphNode, b: GraphNode, label: str = '') -> GraphNode:
        """
        Create a - b.

        Backward: g flows to a, -g to b.
        """
        return self._append(NodeKind.SUBTRACT, (self._own(a), self._own(b)), 0.0, label)

    def multiply(self, a: GraphNode, b: GraphNode, label: str = '') -> GraphNode:
        """
        Create a * b.

        Backward: g * b.value flows to a, g * a.value to b.
        """
        return self._append(NodeKind.MULTIPLY, (self._own(a), self._own(b)), 0.0, label)

    def divide(self, numerator: GraphNode, denominator: GraphNode, label: str = '') -> GraphNode:
        """
        Create numerator / denominator.

        The forward pass raises DomainError if the denominator is zero.
        Backward: g / d flows to the numerator, -g * n / d^2 to the
        denominator.
        """
        return self._append(
            NodeKind.DIVIDE, (self._own(numerator), self._own(denominator)), 0.0, label
        )

    def power(self, base: GraphNode, n: Numeric, label: str = '') -> GraphNode:
        """
        Create base**n for a constant exponent n.

        Backward: g * n * base^(n-1) flows to the base. A base of exactly
        zero is handled by the graph's zero_base_policy.
        """
        return self._append(NodeKind.POWER, (self._own(base),), _as_float(n), label)

    def log(self, a: GraphNode, label: str = '') -> GraphNode:
        """
        Create ln(a).

        The forward pass raises DomainError unless a is positive.
        Backward: g / a flows to a.
        """
        return self._append(NodeKind.LOG, (self._own(a),), 0.0, label)

    def set_value(self, node: GraphNode, value: Numeric) -> None:
        """
        Rebind an input node before the next forward pass.

        Every cached non-leaf value becomes stale, so a forward pass is
        required before the next backward pass.

        Raises:
            ValueError: If `node` is not an input node.
        """
        i = self._own(node)
        if self._kinds[i] is not NodeKind.INPUT:
            raise ValueError(f"{node.label} is a {self._kinds[i].value} node, not an input")
        self._values[i] = _as_float(value)
        n = len(self)
        self._fresh[:n] = [kind in _LEAVES for kind in self._kinds]

    # =========================================================================
    # Forward pass
    # =========================================================================

    def _forward_node(self, i: int) -> None:
        kind = self._kinds[i]
        if kind in _LEAVES:
            return

        self._fresh[i] = False
        args = self._args[i]
        for j in args:
            if not self._fresh[j]:
                raise RuntimeError(
                    f"{self._labels[i]} evaluated before its input {self._labels[j]}"
                )
        a = float(self._values[args[0]])

        if kind is NodeKind.ADD:
            value = a + float(self._values[args[1]])
        elif kind is NodeKind.SUBTRACT:
            value = a - float(self._values[args[1]])
        elif kind is NodeKind.MULTIPLY:
            value = a * float(self._values[args[1]])
        elif kind is NodeKind.DIVIDE:
            value = a / check_divisor(float(self._values[args[1]]), GraphNode(self, i))
        elif kind is NodeKind.POWER:
            value = real_power(a, self._params[i])
        elif kind is NodeKind.LOG:
            value = math.log(check_log_argument(a, GraphNode(self, i)))
        else:
            raise AssertionError(f"unhandled node kind {kind}")

        self._values[i] = value
        self._fresh[i] = True

    def forward_pass(self, nodes: Optional[Iterable[GraphNode]] = None) -> None:
        """
        Compute and cache node values.

        Args:
            nodes: Nodes to evaluate, in an order where every node comes
                after its inputs. Defaults to the whole graph in
                construction order.

        Raises:
            DomainError: If a log argument is not positive or a divisor is
                zero. The failing node and everything after it stay stale.
            RuntimeError: If a node is visited before one of its inputs.
        """
        if nodes is None:
            indices: Iterable[int] = range(len(self))
        else:
            indices = [self._own(node) for node in nodes]
        count = 0
        for i in indices:
            self._forward_node(i)
            count += 1
        logger.debug("forward pass evaluated %d nodes", count)

    def topological_sort(self, output: GraphNode) -> List[GraphNode]:
        """
        Return the nodes `output` depends on, `output` last.

        Because nodes can only reference earlier nodes, the result is just
        the ancestors of `output` in construction order.
        """
        o = self._own(output)
        needed = np.zeros(o + 1, dtype=bool)
        needed[o] = True
        for i in range(o, -1, -1):
            if needed[i]:
                for j in self._args[i]:
                    needed[j] = True
        return [GraphNode(self, int(i)) for i in np.flatnonzero(needed)]

    # =========================================================================
    # Backward pass
    # =========================================================================

    def zero_grad(self) -> None:
        """Reset every gradient accumulator to zero."""
        self._grads[:] = 0.0

    def backward(self, output: GraphNode, seed: float = DEFAULT_SEED) -> None:
        """
        Propagate `seed` from `output` back to every node it depends on.

        Each node receives d(output)/d(node) * seed, ADDED to its gradient
        accumulator. Constants are never updated. A node used by several
        successors receives the sum of all their contributions.

        Raises:
            RuntimeError: If `output` has not been computed since the last
                change of an input.
            DomainError: Under the 'strict' zero-base policy, if a power
                node with a nonzero exponent below 1 has a base of exactly zero.
                Nothing is accumulated in that case.
        """
        o = self._own(output)
        if not self._fresh[o]:
            raise RuntimeError(
                f"{self._labels[o]} has no current value; run forward_pass first"
            )
        logger.debug("backward pass from %s with seed %g", self._labels[o], seed)

        adjoint = np.zeros(o + 1, dtype=np.float64)
        adjoint[o] = seed

        for i in range(o, -1, -1):
            g = float(adjoint[i])
            kind = self._kinds[i]
            if g == 0.0 or kind in _LEAVES:
                continue
            args = self._args[i]
            a = float(self._values[args[0]])

            if kind is NodeKind.ADD:
                adjoint[args[0]] += g
                adjoint[args[1]] += g
            elif kind is NodeKind.SUBTRACT:
                adjoint[args[0]] += g
                adjoint[args[1]] -= g
            elif kind is NodeKind.MULTIPLY:
                b = float(self._values[args[1]])
                adjoint[args[0]] += g * b
                adjoint[args[1]] += g * a
            elif kind is NodeKind.DIVIDE:
                b = float(self._values[args[1]])
                adjoint[args[0]] += g / b
                adjoint[args[1]] -= g * a / (b * b)
            elif kind is NodeKind.POWER:
                adjoint[args[0]] += g * self._power_partial(i, a)
            elif kind is NodeKind.LOG:
                adjoint[args[0]] += g / a
            else:
                raise AssertionError(f"unhandled node kind {kind}")

        constants = [kind is NodeKind.CONSTANT for kind in self._kinds[:o + 1]]
        adjoint[constants] = 0.0
        self._grads[:o + 1] += adjoint

    def _power_partial(self, i: int, base: float) -> float:
        n = self._params[i]
        if base != 0:
            return n * real_power(base, n - 1)
        if self.zero_base_policy == 'skip':
            logger.debug("%s: zero base, gradient not propagated", self._labels[i])
            return 0.0
        if n == 0:
            # x^0 is constant
            return 0.0
        if n < 1:
            raise DomainError(Operation.POWER, base, GraphNode(self, i))
        return n * real_power(0.0, n - 1)

    # =========================================================================
    # Utilities
    # =========================================================================

    def copy(self) -> Graph:
        """Return an independent graph with the same topology and state."""
        clone = Graph(self.zero_base_policy)
        clone._kinds = list(self._kinds)
        clone._args = list(self._args)
        clone._params = list(self._params)
        clone._labels = list(self._labels)
        clone._values = self._values.copy()
        clone._grads = self._grads.copy()
        clone._fresh = self._fresh.copy()
        return clone

    def sweep(
        self,
        x: GraphNode,
        output: GraphNode,
        points: Iterable[Numeric],
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Evaluate `output` and d(output)/dx at many points.

        Only the ancestors of `output` are evaluated. Gradients are reset
        before each backward pass, and `x` is left bound to the last point.

        Returns:
            (values, derivatives) as float64 arrays shaped like `points`.

        Raises:
            DomainError: At the first point where `output` is undefined.
        """
        points = np.asarray(points, dtype=np.float64)
        values = np.empty_like(points)
        derivatives = np.empty_like(points)
        order = self.topological_sort(output)
        for k, point in enumerate(points.flat):
            self.set_value(x, point)
            self.forward_pass(order)
            self.zero_grad()
            self.backward(output)
            values.flat[k] = output.value
            derivatives.flat[k] = x.gradient
        return values, derivatives


def _as_float(value: Numeric) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.floating, np.integer)):
        raise TypeError(f"expected a real number, got {type(value).__name__}")
    return float(value)


def draw_graph(graph: Graph, format: str = 'text') -> str:
    """
    Generate a visualization of a computation graph.

    Args:
        graph: The graph to visualize.
        format: 'text' for a table, 'dot' for Graphviz DOT format.

    Returns:
        String representation of the graph.
    """
    nodes = graph.nodes()

    if format == 'dot':
        lines = ['digraph G {', '  rankdir=LR;']
        for node in nodes:
            nid = node.index
            lines.append(
                f'  n{nid} [label="{node.label}\\n'
                f'value={node.value:.4f}\\n'
                f'grad={node.gradient:.4f}", shape=box];'
            )
            if node.kind not in _LEAVES:
                op_id = f'op{nid}'
                lines.append(f'  {op_id} [label="{_op_label(node)}", shape=circle];')
                lines.append(f'  {op_id} -> n{nid};')
                for parent in node.inputs:
                    lines.append(f'  n{parent.index} -> {op_id};')
        lines.append('}')
        return '\n'.join(lines)

    lines = ['Computation Graph:', '=' * 50]
    for node in reversed(nodes):
        op_str = ''
        if node.kind not in _LEAVES:
            parent_labels = [parent.label for parent in node.inputs]
            op_str = f' = {_op_label(node)}(' + ', '.join(parent_labels) + ')'
        elif node.kind is NodeKind.CONSTANT:
            op_str = ' (const)'
        lines.append(
            f'{node.label:>10}: value={node.value:>10.4f}, '
            f'grad={node.gradient:>10.4f}{op_str}'
        )
    return '\n'.join(lines)


def _op_label(node: GraphNode) -> str:
    if node.kind is NodeKind.POWER:
        return f'**{node.graph._params[node.index]:g}'
    return node.kind.value
