"""
derivcalc Demo: Forward vs Backward Mode
========================================

Differentiates

    f(x) = (5 + x^3) - ln((x^2 - 5)(4 - 3x)) / (x - 4)

at a point with both engines and prints the results side by side.

Run with: python examples/demo.py [--x0 1.5] [--plot] [--verbose]
"""

import argparse
import logging
import sys
from typing import List, Optional, Tuple

import numpy as np

from derivcalc import (
    DomainError,
    Expression,
    Graph,
    GraphNode,
    add,
    constant,
    divide,
    draw_graph,
    log,
    multiply,
    power,
    subtract,
)


def build_expression() -> Expression:
    """Assemble f as an expression tree."""
    g = multiply(
        subtract(power(2), constant(5)),
        subtract(constant(4), multiply(constant(3), power(1))),
    )
    log_g_over_x_minus_4 = divide(log(g), subtract(power(1), constant(4)))
    return subtract(add(constant(5), power(3)), log_g_over_x_minus_4)


def build_graph(x0: float) -> Tuple[Graph, GraphNode, GraphNode]:
    """Assemble f as a computation graph. Returns (graph, x, output)."""
    graph = Graph()
    five = graph.constant(5.0, label='5')
    four = graph.constant(4.0, label='4')
    three = graph.constant(3.0, label='3')

    x = graph.input(x0, label='x')
    x2 = graph.power(x, 2, label='x^2')
    x2_minus_5 = graph.subtract(x2, five, label='x^2-5')
    three_x = graph.multiply(three, x, label='3x')
    four_minus_3x = graph.subtract(four, three_x, label='4-3x')
    g = graph.multiply(x2_minus_5, four_minus_3x, label='g')
    log_g = graph.log(g, label='ln(g)')
    x_minus_4 = graph.subtract(x, four, label='x-4')
    quotient = graph.divide(log_g, x_minus_4, label='ln(g)/(x-4)')
    x3 = graph.power(x, 3, label='x^3')
    five_plus_x3 = graph.add(five, x3, label='5+x^3')
    f = graph.subtract(five_plus_x3, quotient, label='f')
    return graph, x, f


def plot_derivatives(f: Expression, points: np.ndarray) -> None:
    """Plot f' from both engines over `points`."""
    import matplotlib.pyplot as plt

    forward = np.array([f.differentiate(x) for x in points])
    graph, x, out = build_graph(float(points[0]))
    _, backward = graph.sweep(x, out, points)

    plt.figure(figsize=(8, 5))
    plt.plot(points, forward, label='forward mode', linewidth=2)
    plt.plot(points, backward, '--', label='backward mode', linewidth=2)
    plt.xlabel('x')
    plt.ylabel("f'(x)")
    plt.title('Derivative of f: forward vs backward mode')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig('./derivatives.png', dpi=150)
    plt.close()
    print("Saved derivative plot to: derivatives.png")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('--x0', type=float, default=1.5, help='point to differentiate at')
    parser.add_argument('--plot', action='store_true', help="save a plot of f' to derivatives.png")
    parser.add_argument('--graph', action='store_true', help='print the computation graph')
    parser.add_argument('--verbose', action='store_true', help='enable debug logging')
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(levelname)s: %(name)s: %(message)s')

    f = build_expression()
    graph, x, out = build_graph(args.x0)

    try:
        fx, dfx_forward = f.value_and_derivative(args.x0)
        graph.forward_pass()
        out.backward(1.0)
    except DomainError as e:
        print(f"Domain Error: {e}", file=sys.stderr)
        return 1
    dfx_backward = x.gradient

    print(f"f(x) = {f}")
    print()
    print("x0\tf(x0)\tForward f'(x0)\tBackward f'(x0)")
    print(f"{args.x0:g}\t{fx:.6f}\t{dfx_forward:.6f}\t{dfx_backward:.6f}")

    if args.graph:
        print()
        print(draw_graph(graph, format='text'))

    if args.plot:
        # (x^2 - 5)(4 - 3x) > 0 on (4/3, sqrt(5))
        plot_derivatives(f, np.linspace(1.35, 2.2, 200))

    return 0


if __name__ == "__main__":
    sys.exit(main())
