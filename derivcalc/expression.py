"""
Expression Trees: Forward-Mode Differentiation
==============================================

An Expression is an immutable tree describing a function of one real
variable x. Every node can evaluate itself and its derivative at a point:

    >>> f = multiply(power(2), constant(3))   # 3x^2
    >>> f.evaluate(2.0)
    12.0
    >>> f.differentiate(2.0)
    12.0

Both results come from one bottom-up pass that carries a (value, tangent)
pair through the tree, i.e. dual numbers. Each node combines its children's
pairs with the matching calculus rule (product rule, quotient rule, chain
rule through ln), so no subtree is evaluated twice.

The pass walks the tree with an explicit stack rather than recursion, so
evaluation, to_graph and str work on trees of any depth. Structural
equality and hashing come from dataclasses and do recurse.

The node set is closed: Constant, Power, Log, Add, Subtract, Product and
Division. Trees are stateless, so evaluating the same tree at many points
is always safe.
"""

from __future__ import annotations
import math
import numpy as np
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Tuple, TypeVar, Union

from .errors import Numeric, check_divisor, check_log_argument, real_power

if TYPE_CHECKING:
    from .graph import Graph, GraphNode


Dual = Tuple[float, float]
T = TypeVar('T')


class Expression:
    """
    Base class for expression tree nodes.

    Subclasses describe one node each through four hooks:

        children()   the operand subtrees, left to right
        _combine()   (value, tangent) from the operands' pairs
        _emit()      the equivalent graph node from the operands' nodes
        _format()    infix text from the operands' text
    """

    def children(self) -> Tuple[Expression, ...]:
        """Operand subtrees, left to right. Leaves have none."""
        return ()

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        raise NotImplementedError

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        raise NotImplementedError

    def _format(self, operands: List[str]) -> str:
        raise NotImplementedError

    def _fold(self, combine: Callable[[Expression, List[T]], T]) -> T:
        """
        Reduce the tree bottom-up without recursion.

        Args:
            combine: Called once per node with the node and the results
                already computed for its children.

        Returns:
            The result for this (root) node.
        """
        results: List[T] = []
        stack: List[Tuple[Expression, bool]] = [(self, False)]
        while stack:
            node, expanded = stack.pop()
            children = node.children()
            if expanded:
                start = len(results) - len(children)
                operands = results[start:]
                del results[start:]
                results.append(combine(node, operands))
            else:
                stack.append((node, True))
                for child in reversed(children):
                    stack.append((child, False))
        return results[0]

    def value_and_derivative(self, x: Numeric) -> Dual:
        """
        Evaluate f(x) and f'(x) together.

        Args:
            x: The point to evaluate at.

        Returns:
            The pair (f(x), f'(x)).

        Raises:
            DomainError: If a logarithm argument is not positive or a
                denominator is zero at x.
        """
        point = float(x)
        return self._fold(lambda node, operands: node._combine(point, operands))

    def evaluate(self, x: Numeric) -> float:
        """Return f(x)."""
        return self.value_and_derivative(x)[0]

    def differentiate(self, x: Numeric) -> float:
        """Return f'(x)."""
        return self.value_and_derivative(x)[1]

    def to_graph(self, graph: Graph, x: GraphNode) -> GraphNode:
        """
        Build the same computation inside a Graph.

        Every Power leaf reads the same input node, so its gradient
        collects the contributions of all of them.

        Args:
            graph: The graph that will own the new nodes.
            x: Input node standing for the variable.

        Returns:
            The node computing this expression.
        """
        return self._fold(lambda node, operands: node._emit(graph, x, operands))

    def __str__(self) -> str:
        return self._fold(lambda node, operands: node._format(operands))

    # =========================================================================
    # Builder shortcuts
    # =========================================================================

    def __add__(self, other: Union[Expression, Numeric]) -> Expression:
        """self + other, numbers becoming Constants."""
        return Add(self, _coerce(other))

    def __radd__(self, other: Numeric) -> Expression:
        """Handle numeric + Expression."""
        return Add(_coerce(other), self)

    def __sub__(self, other: Union[Expression, Numeric]) -> Expression:
        """self - other, numbers becoming Constants."""
        return Subtract(self, _coerce(other))

    def __rsub__(self, other: Numeric) -> Expression:
        """Handle numeric - Expression."""
        return Subtract(_coerce(other), self)

    def __mul__(self, other: Union[Expression, Numeric]) -> Expression:
        """self * other, numbers becoming Constants."""
        return Product(self, _coerce(other))

    def __rmul__(self, other: Numeric) -> Expression:
        """Handle numeric * Expression."""
        return Product(_coerce(other), self)

    def __truediv__(self, other: Union[Expression, Numeric]) -> Expression:
        """self / other, numbers becoming Constants."""
        return Division(self, _coerce(other))

    def __rtruediv__(self, other: Numeric) -> Expression:
        """Handle numeric / Expression."""
        return Division(_coerce(other), self)


def _real(value: Numeric, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.floating, np.integer)):
        raise TypeError(f"{what} must be a real number, got {type(value).__name__}")
    return float(value)


def _expression(value: object, what: str) -> None:
    if not isinstance(value, Expression):
        raise TypeError(f"{what} must be an Expression, got {type(value).__name__}")


def _coerce(other: Union[Expression, Numeric]) -> Expression:
    return other if isinstance(other, Expression) else Constant(other)


# =============================================================================
# Leaves
# =============================================================================

@dataclass(frozen=True)
class Constant(Expression):
    """f(x) = c, f'(x) = 0."""

    c: float

    def __post_init__(self) -> None:
        object.__setattr__(self, 'c', _real(self.c, 'constant'))

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        return self.c, 0.0

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.constant(self.c)

    def _format(self, operands: List[str]) -> str:
        return f'{self.c:g}'


@dataclass(frozen=True)
class Power(Expression):
    """
    f(x) = x^n, f'(x) = n * x^(n-1).

    Nothing is special-cased at x = 0: for n < 1 the derivative there is
    whatever IEEE arithmetic gives (inf or nan). Callers that may hit such
    points must check the domain themselves.
    """

    n: float

    def __post_init__(self) -> None:
        object.__setattr__(self, 'n', _real(self.n, 'exponent'))

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        return real_power(x, self.n), self.n * real_power(x, self.n - 1)

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.power(x, self.n)

    def _format(self, operands: List[str]) -> str:
        return 'x' if self.n == 1 else f'x^{self.n:g}'


# =============================================================================
# Composites
# =============================================================================

@dataclass(frozen=True)
class Log(Expression):
    """
    f(x) = ln(u(x)), f'(x) = u'(x) / u(x).

    Raises DomainError wherever u(x) <= 0 or u(x) is NaN, for the value
    and the derivative alike.
    """

    inner: Expression

    def __post_init__(self) -> None:
        _expression(self.inner, 'log argument')

    def children(self) -> Tuple[Expression, ...]:
        return (self.inner,)

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        (u, du), = operands
        check_log_argument(u, self)
        return math.log(u), du / u

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.log(operands[0])

    def _format(self, operands: List[str]) -> str:
        return f'ln({operands[0]})'


class _Binary(Expression):
    """Shared plumbing for the two-operand nodes."""

    left: Expression
    right: Expression

    def __post_init__(self) -> None:
        _expression(self.left, 'left operand')
        _expression(self.right, 'right operand')

    def children(self) -> Tuple[Expression, ...]:
        return (self.left, self.right)


@dataclass(frozen=True)
class Add(_Binary):
    """Sum rule: (u + v)' = u' + v'."""

    left: Expression
    right: Expression

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        (a, da), (b, db) = operands
        return a + b, da + db

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.add(*operands)

    def _format(self, operands: List[str]) -> str:
        return f'({operands[0]} + {operands[1]})'


@dataclass(frozen=True)
class Subtract(_Binary):
    """Difference rule: (u - v)' = u' - v'."""

    left: Expression
    right: Expression

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        (a, da), (b, db) = operands
        return a - b, da - db

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.subtract(*operands)

    def _format(self, operands: List[str]) -> str:
        return f'({operands[0]} - {operands[1]})'


@dataclass(frozen=True)
class Product(_Binary):
    """Product rule: (uv)' = u'v + uv'."""

    left: Expression
    right: Expression

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        (a, da), (b, db) = operands
        return a * b, da * b + a * db

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.multiply(*operands)

    def _format(self, operands: List[str]) -> str:
        return f'({operands[0]} * {operands[1]})'


@dataclass(frozen=True)
class Division(Expression):
    """
    Quotient rule: (u/v)' = (u'v - uv') / v^2.

    Raises DomainError wherever v(x) == 0.
    """

    numerator: Expression
    denominator: Expression

    def __post_init__(self) -> None:
        _expression(self.numerator, 'numerator')
        _expression(self.denominator, 'denominator')

    def children(self) -> Tuple[Expression, ...]:
        return (self.numerator, self.denominator)

    def _combine(self, x: float, operands: List[Dual]) -> Dual:
        (u, du), (v, dv) = operands
        check_divisor(v, self)
        return u / v, (du * v - u * dv) / (v * v)

    def _emit(self, graph: Graph, x: GraphNode, operands: List[GraphNode]) -> GraphNode:
        return graph.divide(*operands)

    def _format(self, operands: List[str]) -> str:
        return f'({operands[0]} / {operands[1]})'


# =============================================================================
# Constructors
# =============================================================================

def constant(c: Numeric) -> Expression:
    """Return the constant function f(x) = c."""
    return Constant(c)


def power(n: Numeric) -> Expression:
    """Return f(x) = x^n. power(1) is the variable itself."""
    return Power(n)


def log(expr: Expression) -> Expression:
    """Return ln(expr), undefined wherever expr <= 0."""
    return Log(expr)


def add(left: Expression, right: Expression) -> Expression:
    """Return left + right."""
    return Add(left, right)


def subtract(left: Expression, right: Expression) -> Expression:
    """Return left - right."""
    return Subtract(left, right)


def multiply(left: Expression, right: Expression) -> Expression:
    """Return left * right."""
    return Product(left, right)


def divide(numerator: Expression, denominator: Expression) -> Expression:
    """Return numerator / denominator, undefined wherever the denominator is 0."""
    return Division(numerator, denominator)
