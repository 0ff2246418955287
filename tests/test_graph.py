"""
Unit Tests: Computation Graph (reverse mode)
============================================

Covers the forward pass, the local backward rule of every node kind,
gradient accumulation through shared nodes, pass bookkeeping (stale values,
ordering, resets) and the zero-base policy of power nodes.

Run with: pytest tests/test_graph.py -v
"""

import logging
import math

import numpy as np
import pytest

from derivcalc import DomainError, Graph, NodeKind, Operation, draw_graph


TOLERANCE = 1e-9


def assert_close(actual: float, expected: float, tol: float = TOLERANCE) -> None:
    """Assert two values are approximately equal."""
    diff = abs(actual - expected)
    assert diff < tol, f"Values differ: {actual} vs {expected} (diff={diff})"


def run(graph: Graph, output) -> None:
    """One full forward + backward cycle with a fresh accumulator."""
    graph.forward_pass()
    graph.zero_grad()
    output.backward(1.0)


# =============================================================================
# Forward Pass
# =============================================================================

class TestForwardPass:
    """Values cached by the forward pass."""

    def test_leaves_hold_values(self) -> None:
        """Inputs and constants carry their values before any pass."""
        g = Graph()
        x = g.input(2.0, label='x')
        c = g.constant(3.0)
        assert x.value == 2.0
        assert c.value == 3.0
        assert x.kind is NodeKind.INPUT
        assert c.kind is NodeKind.CONSTANT

    def test_all_operations(self) -> None:
        """Every operation at a = 6, b = 2."""
        g = Graph()
        a = g.input(6.0)
        b = g.input(2.0)
        s = g.add(a, b)
        d = g.subtract(a, b)
        p = g.multiply(a, b)
        q = g.divide(a, b)
        w = g.power(b, 3)
        l = g.log(b)
        g.forward_pass()
        assert s.value == 8.0
        assert d.value == 4.0
        assert p.value == 12.0
        assert q.value == 3.0
        assert w.value == 8.0
        assert_close(l.value, math.log(2.0))

    def test_single_node_forward(self) -> None:
        """node.forward() computes just that node."""
        g = Graph()
        x = g.input(3.0)
        y = x * x
        y.forward()
        assert y.value == 9.0

    def test_explicit_order(self) -> None:
        """forward_pass accepts a caller-chosen order."""
        g = Graph()
        x = g.input(2.0)
        y = x * x
        z = y + 1
        g.forward_pass([y, z])
        assert z.value == 5.0

    def test_out_of_order_rejected(self) -> None:
        """A node visited before its input is an ordering error."""
        g = Graph()
        x = g.input(2.0)
        y = x * x
        z = y + 1
        with pytest.raises(RuntimeError):
            g.forward_pass([z, y])

    def test_labels(self) -> None:
        """Unlabelled nodes are named after their position."""
        g = Graph()
        x = g.input(1.0, label='x')
        y = g.power(x, 2)
        assert x.label == 'x'
        assert y.label == 'v1'
        assert y.inputs == (x,)


# =============================================================================
# Backward Pass
# =============================================================================

class TestBackwardRules:
    """Local backward rule of every node kind."""

    def test_addition(self) -> None:
        """d(a + b) = 1 for both operands."""
        g = Graph()
        a, b = g.input(2.0), g.input(3.0)
        out = a + b
        run(g, out)
        assert a.gradient == 1.0
        assert b.gradient == 1.0

    def test_subtraction(self) -> None:
        """d(a - b) = 1 for a, -1 for b."""
        g = Graph()
        a, b = g.input(5.0), g.input(3.0)
        out = a - b
        run(g, out)
        assert a.gradient == 1.0
        assert b.gradient == -1.0

    def test_product(self) -> None:
        """Each factor receives the other's value."""
        g = Graph()
        a, b = g.input(2.0), g.input(3.0)
        out = a * b
        run(g, out)
        assert a.gradient == 3.0
        assert b.gradient == 2.0

    def test_division(self) -> None:
        """d(a/b) = 1/b for a, -a/b^2 for b."""
        g = Graph()
        a, b = g.input(6.0), g.input(2.0)
        out = a / b
        run(g, out)
        assert a.gradient == 0.5
        assert b.gradient == -1.5

    def test_power(self) -> None:
        """d(x^3) = 3x^2 = 12 at 2."""
        g = Graph()
        x = g.input(2.0)
        out = x ** 3
        run(g, out)
        assert x.gradient == 12.0

    def test_log(self) -> None:
        """d(ln x) = 1/x."""
        g = Graph()
        x = g.input(2.0)
        out = x.log()
        run(g, out)
        assert x.gradient == 0.5

    def test_constant_collects_nothing(self) -> None:
        """Constants keep a zero gradient."""
        g = Graph()
        c = g.constant(3.0)
        x = g.input(2.0)
        out = c * x
        run(g, out)
        assert x.gradient == 3.0
        assert c.gradient == 0.0

    def test_intermediate_gradient(self) -> None:
        """Intermediate nodes hold d(output)/d(node)."""
        g = Graph()
        x = g.input(2.0)
        y = x * 3
        z = y * y
        run(g, z)
        # dz/dy = 2y = 12, dz/dx = 12 * 3
        assert y.gradient == 12.0
        assert x.gradient == 36.0

    def test_seed_scales_gradient(self) -> None:
        """The seed multiplies every gradient."""
        g = Graph()
        x = g.input(2.0)
        out = x * x
        g.forward_pass()
        out.backward(0.5)
        assert x.gradient == 2.0


class TestAccumulation:
    """Shared nodes sum contributions; passes add to the accumulators."""

    def test_shared_input(self) -> None:
        """x*x + x*3 at x=2: gradient 2x + 3 = 7."""
        g = Graph()
        x = g.input(2.0)
        out = g.add(g.multiply(x, x), g.multiply(x, g.constant(3.0)))
        run(g, out)
        assert x.gradient == 7.0

    def test_repeated_cycles_with_reset(self) -> None:
        """Resetting between cycles gives identical results."""
        g = Graph()
        x = g.input(2.0)
        out = x * x + x * 3
        run(g, out)
        first = (out.value, x.gradient)
        run(g, out)
        assert (out.value, x.gradient) == first

    def test_repeated_cycles_without_reset_inflate(self) -> None:
        """Two passes without zero_grad double the gradient."""
        g = Graph()
        x = g.input(2.0)
        out = x * x + x * 3
        g.forward_pass()
        out.backward()
        g.forward_pass()
        out.backward()
        assert out.value == 10.0
        assert x.gradient == 14.0

    def test_zero_grad(self) -> None:
        """zero_grad clears every accumulator."""
        g = Graph()
        x = g.input(2.0)
        out = x * x
        g.forward_pass()
        out.backward()
        g.zero_grad()
        assert x.gradient == 0.0
        assert out.gradient == 0.0


# =============================================================================
# Pass Bookkeeping
# =============================================================================

class TestPassState:
    """Stale values, rebinding and misuse."""

    def test_backward_requires_forward(self) -> None:
        """backward before any forward pass is refused."""
        g = Graph()
        x = g.input(2.0)
        out = x * x
        with pytest.raises(RuntimeError):
            out.backward()

    def test_set_value_invalidates(self) -> None:
        """Rebinding an input makes derived values stale until recomputed."""
        g = Graph()
        x = g.input(2.0)
        out = x * x
        g.forward_pass()
        x.set_value(3.0)
        with pytest.raises(RuntimeError):
            out.backward()
        run(g, out)
        assert out.value == 9.0
        assert x.gradient == 6.0

    def test_set_value_on_non_input(self) -> None:
        """Only inputs can be rebound."""
        g = Graph()
        c = g.constant(1.0)
        with pytest.raises(ValueError):
            g.set_value(c, 2.0)

    def test_node_from_other_graph(self) -> None:
        """Operands must belong to the graph building the node."""
        g, h = Graph(), Graph()
        x = g.input(1.0)
        y = h.input(1.0)
        with pytest.raises(ValueError):
            g.add(x, y)

    def test_non_node_operand(self) -> None:
        """Builders take handles, and inputs take numbers."""
        g = Graph()
        x = g.input(1.0)
        with pytest.raises(TypeError):
            g.add(x, 1.0)
        with pytest.raises(TypeError):
            g.input("1.0")

    def test_handles_compare_by_position(self) -> None:
        """Two handles to the same node are equal and hash alike."""
        g = Graph()
        x = g.input(1.0)
        assert g.node(0) == x
        assert len({g.node(0), x}) == 1
        with pytest.raises(IndexError):
            g.node(1)

    def test_grows_past_initial_capacity(self) -> None:
        """The scratch buffers grow as nodes are appended."""
        g = Graph()
        x = g.input(1.0)
        out = x
        for _ in range(40):
            out = out + x
        run(g, out)
        assert len(g) == 41
        assert out.value == 41.0
        assert x.gradient == 41.0

    def test_repr(self) -> None:
        """Computed nodes show value and gradient; stale ones their operation."""
        g = Graph()
        x = g.input(2.0, label='x')
        out = g.power(x, 2, label='sq')
        assert repr(out) == 'GraphNode(sq=**2(x), stale)'
        run(g, out)
        assert repr(out) == 'GraphNode(sq=4.0000, grad=1.0000)'


# =============================================================================
# Domain Errors
# =============================================================================

class TestDomain:
    """Forward pass rejects ln of non-positive values and division by zero."""

    def test_log_of_negative(self) -> None:
        """ln(x - 3) at 2 fails at the log node."""
        g = Graph()
        x = g.input(2.0)
        out = (x - 3).log()
        with pytest.raises(DomainError) as excinfo:
            g.forward_pass()
        assert excinfo.value.operation is Operation.LOG
        assert excinfo.value.offending_value == -1.0
        assert excinfo.value.node == out

    def test_log_of_nan(self) -> None:
        """sqrt(-4) is nan; ln(nan) is rejected, not passed through."""
        g = Graph()
        x = g.input(-4.0)
        out = (x ** 0.5).log()
        with pytest.raises(DomainError) as excinfo:
            g.forward_pass()
        assert excinfo.value.operation is Operation.LOG
        assert math.isnan(excinfo.value.offending_value)
        assert excinfo.value.node == out

    def test_error_shows_operation_of_stale_node(self) -> None:
        """The message shows the failing node's operation and operands."""
        g = Graph()
        x = g.input(2.0, label='x')
        shifted = g.subtract(x, g.constant(3.0), label='shifted')
        g.log(shifted, label='ln')
        with pytest.raises(DomainError) as excinfo:
            g.forward_pass()
        message = str(excinfo.value)
        assert 'ln=log(shifted), stale' in message
        assert '0.0000' not in message

    def test_failed_node_stays_stale(self) -> None:
        """A node that failed its check cannot seed a backward pass."""
        g = Graph()
        x = g.input(2.0)
        out = (x - 3).log()
        with pytest.raises(DomainError):
            g.forward_pass()
        with pytest.raises(RuntimeError):
            out.backward()

    def test_division_by_zero(self) -> None:
        """1 / (x - 4) is undefined at x = 4."""
        g = Graph()
        x = g.input(4.0)
        out = 1 / (x - 4)
        with pytest.raises(DomainError) as excinfo:
            g.forward_pass()
        assert excinfo.value.operation is Operation.DIVISION
        assert excinfo.value.node == out

    def test_recovers_at_valid_point(self) -> None:
        """After a failure, a valid input gives a normal cycle."""
        g = Graph()
        x = g.input(4.0)
        out = 1 / (x - 4)
        with pytest.raises(DomainError):
            g.forward_pass()
        x.set_value(5.0)
        run(g, out)
        assert out.value == 1.0
        assert x.gradient == -1.0


class TestZeroBasePolicy:
    """Power backward rule when the base is exactly zero."""

    def test_skip_fractional(self) -> None:
        """The default policy propagates nothing at a zero base."""
        g = Graph()
        x = g.input(0.0)
        out = x ** 0.5
        run(g, out)
        assert out.value == 0.0
        assert x.gradient == 0.0

    def test_skip_is_approximate_for_linear(self) -> None:
        """Known inexactness of the default policy."""
        # d/dx x^1 = 1, but the legacy guard propagates nothing
        g = Graph()
        x = g.input(0.0)
        out = x ** 1
        run(g, out)
        assert x.gradient == 0.0

    def test_skip_logs(self, caplog: pytest.LogCaptureFixture) -> None:
        """Skipped propagation is reported at debug level."""
        g = Graph()
        x = g.input(0.0)
        out = x ** 2
        with caplog.at_level(logging.DEBUG, logger='derivcalc.graph'):
            run(g, out)
        assert 'zero base' in caplog.text

    def test_strict_exact_for_integer_exponents(self) -> None:
        """n * 0^(n-1): 1 for x^1, 0 for x^2."""
        g = Graph(zero_base_policy='strict')
        x = g.input(0.0)
        linear = x ** 1
        square = x ** 2
        run(g, linear)
        assert x.gradient == 1.0
        run(g, square)
        assert x.gradient == 0.0

    def test_strict_zero_exponent(self) -> None:
        """x^0 is constant 1, so its gradient at 0 is 0, not an error."""
        g = Graph(zero_base_policy='strict')
        x = g.input(0.0)
        out = x ** 0
        run(g, out)
        assert out.value == 1.0
        assert x.gradient == 0.0

    def test_strict_rejects_fractional(self) -> None:
        """sqrt has no derivative at 0; the strict policy refuses it."""
        g = Graph(zero_base_policy='strict')
        x = g.input(0.0)
        out = x ** 0.5 + x
        g.forward_pass()
        with pytest.raises(DomainError) as excinfo:
            out.backward()
        assert excinfo.value.operation is Operation.POWER
        # nothing accumulated by the aborted pass
        assert x.gradient == 0.0

    def test_unknown_policy(self) -> None:
        """Policy names are validated on construction."""
        with pytest.raises(ValueError):
            Graph(zero_base_policy='clamp')


# =============================================================================
# Utilities
# =============================================================================

class TestUtilities:
    """copy, sweep, topological_sort and draw_graph."""

    def test_copy_is_independent(self) -> None:
        """A clone runs its own passes without touching the original."""
        g = Graph()
        x = g.input(2.0)
        out = x * x
        clone = g.copy()
        cx, cout = clone.node(x.index), clone.node(out.index)
        cx.set_value(5.0)
        run(clone, cout)
        run(g, out)
        assert cout.value == 25.0
        assert cx.gradient == 10.0
        assert out.value == 4.0
        assert x.gradient == 4.0

    def test_sweep(self) -> None:
        """f = x^2 + 3x and f' = 2x + 3 over several points."""
        g = Graph()
        x = g.input(0.0)
        out = x * x + x * 3
        values, derivatives = g.sweep(x, out, [0.0, 1.0, 2.0])
        np.testing.assert_allclose(values, [0.0, 4.0, 10.0])
        np.testing.assert_allclose(derivatives, [3.0, 5.0, 7.0])

    def test_sweep_ignores_unrelated_nodes(self) -> None:
        """Only ancestors of the output are evaluated."""
        g = Graph()
        x = g.input(0.0)
        g.log(x)  # undefined at x <= 0, but not part of out
        out = x * 2
        values, derivatives = g.sweep(x, out, np.array([-1.0, 0.0]))
        np.testing.assert_allclose(values, [-2.0, 0.0])
        np.testing.assert_allclose(derivatives, [2.0, 2.0])

    def test_topological_sort(self) -> None:
        """Ancestors in construction order, output last."""
        g = Graph()
        x = g.input(1.0)
        unrelated = g.constant(7.0)
        y = x * x
        z = y + x
        assert g.topological_sort(z) == [x, y, z]
        assert unrelated not in g.topological_sort(z)

    def test_draw_graph_text(self) -> None:
        """Text table lists labels and operations."""
        g = Graph()
        x = g.input(2.0, label='x')
        out = g.power(x, 2, label='sq')
        run(g, out)
        text = draw_graph(g)
        assert 'Computation Graph:' in text
        assert 'sq' in text
        assert '**2(x)' in text

    def test_draw_graph_dot(self) -> None:
        """DOT output links operands through operation nodes."""
        g = Graph()
        x = g.input(2.0, label='x')
        g.log(x, label='lnx')
        dot = draw_graph(g, format='dot')
        assert dot.startswith('digraph G {')
        assert 'op1 -> n1;' in dot
        assert 'n0 -> op1;' in dot


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
