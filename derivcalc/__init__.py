"""derivcalc: forward-mode and reverse-mode derivatives of scalar expressions."""

from .errors import DomainError, Operation
from .expression import (
    Expression,
    Constant,
    Power,
    Log,
    Add,
    Subtract,
    Product,
    Division,
    constant,
    power,
    log,
    add,
    subtract,
    multiply,
    divide,
)
from .graph import Graph, GraphNode, NodeKind, draw_graph

__all__ = [
    "DomainError",
    "Operation",
    "Expression",
    "Constant",
    "Power",
    "Log",
    "Add",
    "Subtract",
    "Product",
    "Division",
    "constant",
    "power",
    "log",
    "add",
    "subtract",
    "multiply",
    "divide",
    "Graph",
    "GraphNode",
    "NodeKind",
    "draw_graph",
]
