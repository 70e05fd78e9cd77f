"""
Stepwise AST - Immutable Expression Tree

Defines the closed set of node kinds the stepwise interpreter evaluates.
Nodes are plain frozen data: they carry a ``kind`` discriminator used by the
engine's dispatch table and have no behavior of their own.

Node Kinds:
    literal  - constant number            Literal(40)
    binop    - binary operator            BinOp('+', Literal(40), Literal(2))
    print    - print statement            Print(expr)
    program  - sequence of statements     Program((stmt, stmt, ...))

Dict Form (program files and the root frame of a serialized state):
    {"kind": "literal", "value": 40}
    {"kind": "binop", "op": "+", "left": {...}, "right": {...}}
    {"kind": "print", "expr": {...}}
    {"kind": "program", "stmts": [{...}, ...]}

Reference: stepwise_runtime.py (evaluation engine)
"""

from typing import Any, Dict, List, Optional, Tuple, Union
from dataclasses import dataclass
from enum import Enum


# Values of the interpreted language
Number = Union[int, float]


# ============================================================================
# Error Definitions
# ============================================================================

E_UNKNOWN_NODE_KIND = "E_UNKNOWN_NODE_KIND"
E_INVALID_PROGRAM = "E_INVALID_PROGRAM"


class StepwiseError(Exception):
    """Base exception for stepwise interpreter errors"""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[{code}] {message}")


class UnknownNodeKind(StepwiseError):
    """A node kind has no registered step function or decoder"""
    def __init__(self, kind: Any):
        self.kind = kind
        super().__init__(E_UNKNOWN_NODE_KIND, f"Unknown node kind: {kind!r}")


class InvalidProgram(StepwiseError):
    """The program tree is absent or malformed"""
    def __init__(self, message: str):
        super().__init__(E_INVALID_PROGRAM, message)


# ============================================================================
# Discriminators
# ============================================================================

class NodeKind(str, Enum):
    """Discriminator carried by every AST node"""
    LITERAL = "literal"
    BINOP = "binop"
    PRINT = "print"
    PROGRAM = "program"


class Operator(str, Enum):
    """Closed set of binary operators"""
    ADD = "+"
    MULTIPLY = "*"


def is_number(value: Any) -> bool:
    """True for int/float values (bool excluded)"""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ============================================================================
# AST Nodes
# ============================================================================

@dataclass(frozen=True)
class ASTNode:
    """Base AST node"""
    kind = None


@dataclass(frozen=True)
class Literal(ASTNode):
    """Literal number"""
    value: Number
    kind = NodeKind.LITERAL


@dataclass(frozen=True)
class BinOp(ASTNode):
    """Binary operation, `a + b` or `a * b`

    ``op`` holds the operator symbol as written. Symbols outside ``Operator``
    are accepted here and rejected when the operation is applied.
    """
    op: str
    left: ASTNode
    right: ASTNode
    kind = NodeKind.BINOP


@dataclass(frozen=True)
class Print(ASTNode):
    """Print statement"""
    expr: ASTNode
    kind = NodeKind.PRINT


@dataclass(frozen=True)
class Program(ASTNode):
    """Top-level statements, evaluated in order"""
    stmts: Tuple[ASTNode, ...] = ()
    kind = NodeKind.PROGRAM

    def __post_init__(self):
        # Lists are accepted for convenience but stored as a tuple
        if not isinstance(self.stmts, tuple):
            object.__setattr__(self, 'stmts', tuple(self.stmts))


def node_kind(node: Any) -> NodeKind:
    """Return the discriminator of an AST node"""
    if not isinstance(node, ASTNode) or node.kind is None:
        raise UnknownNodeKind(type(node).__name__)
    return node.kind


# ============================================================================
# Dict Conversion
# ============================================================================

def node_to_dict(node: ASTNode) -> Dict[str, Any]:
    """Convert an AST subtree to its dict form (iterative, any depth)"""
    root: Dict[str, Any] = {}
    # Each entry pairs a node with the dict that receives its fields
    pending: List[Tuple[ASTNode, Dict[str, Any]]] = [(node, root)]

    while pending:
        current, out = pending.pop()
        try:
            kind = NodeKind(node_kind(current))
        except ValueError:
            raise UnknownNodeKind(current.kind) from None
        out['kind'] = kind.value

        if kind is NodeKind.LITERAL:
            out['value'] = current.value
        elif kind is NodeKind.BINOP:
            out['op'] = current.op.value if isinstance(current.op, Operator) else current.op
            out['left'] = {}
            out['right'] = {}
            pending.append((current.right, out['right']))
            pending.append((current.left, out['left']))
        elif kind is NodeKind.PRINT:
            out['expr'] = {}
            pending.append((current.expr, out['expr']))
        else:
            out['stmts'] = [{} for _ in current.stmts]
            pending.extend(zip(current.stmts, out['stmts']))

    return root


def node_from_dict(data: Any) -> ASTNode:
    """
    Build an AST subtree from its dict form

    Works bottom-up with an explicit stack, so nesting depth is not limited
    by the Python recursion limit.

    Args:
        data: Dict with a 'kind' key and the fields of that kind

    Returns:
        Frozen AST node

    Raises:
        UnknownNodeKind: If 'kind' names no known node
        InvalidProgram: If the dict is malformed
    """
    built: List[ASTNode] = []
    # (dict, None) still has to be checked and expanded; (dict, kind) has its
    # children on top of `built` and can be assembled
    pending: List[Tuple[Any, Optional[NodeKind]]] = [(data, None)]

    while pending:
        item, kind = pending.pop()
        if kind is None:
            kind = _dict_kind(item)
            pending.append((item, kind))
            pending.extend((child, None) for child in reversed(_child_dicts(item, kind)))
        else:
            built.append(_assemble(item, kind, built))

    return built[0]


def _dict_kind(data: Any) -> NodeKind:
    if not isinstance(data, dict):
        raise InvalidProgram(f"Expected node dict, got {type(data).__name__}")
    if 'kind' not in data:
        raise InvalidProgram("Node dict has no 'kind'")
    try:
        return NodeKind(data['kind'])
    except ValueError:
        raise UnknownNodeKind(data['kind']) from None


def _child_dicts(data: Dict[str, Any], kind: NodeKind) -> List[Any]:
    if kind is NodeKind.LITERAL:
        value = _field(data, 'value')
        if not is_number(value):
            raise InvalidProgram(f"Literal value must be a number, got {type(value).__name__}")
        return []
    elif kind is NodeKind.BINOP:
        if not isinstance(_field(data, 'op'), str):
            raise InvalidProgram("BinOp 'op' must be a string")
        return [_field(data, 'left'), _field(data, 'right')]
    elif kind is NodeKind.PRINT:
        return [_field(data, 'expr')]
    else:
        stmts = _field(data, 'stmts')
        if not isinstance(stmts, list):
            raise InvalidProgram("Program 'stmts' must be a list")
        return stmts


def _assemble(data: Dict[str, Any], kind: NodeKind, built: List[ASTNode]) -> ASTNode:
    """Build one node from its dict, taking its children off `built`"""
    if kind is NodeKind.LITERAL:
        return Literal(data['value'])
    elif kind is NodeKind.BINOP:
        right = built.pop()
        left = built.pop()
        return BinOp(data['op'], left, right)
    elif kind is NodeKind.PRINT:
        return Print(built.pop())
    else:
        count = len(data['stmts'])
        stmts = tuple(built[len(built) - count:])
        del built[len(built) - count:]
        return Program(stmts)


def _field(data: Dict[str, Any], name: str) -> Any:
    if name not in data:
        raise InvalidProgram(f"{data.get('kind')} node is missing '{name}'")
    return data[name]


def count_nodes(node: ASTNode) -> int:
    """Count the nodes of a subtree without recursing"""
    count = 0
    pending: List[ASTNode] = [node]
    while pending:
        current = pending.pop()
        count += 1
        if isinstance(current, BinOp):
            pending.extend((current.left, current.right))
        elif isinstance(current, Print):
            pending.append(current.expr)
        elif isinstance(current, Program):
            pending.extend(current.stmts)
    return count


# ============================================================================
# Exports
# ============================================================================

__all__ = [
    'Number',
    'NodeKind',
    'Operator',
    'ASTNode',
    'Literal',
    'BinOp',
    'Print',
    'Program',
    'StepwiseError',
    'UnknownNodeKind',
    'InvalidProgram',
    'E_UNKNOWN_NODE_KIND',
    'E_INVALID_PROGRAM',
    'is_number',
    'node_kind',
    'node_to_dict',
    'node_from_dict',
    'count_nodes',
]
