"""
Stepwise Runtime - Pausable Small-Step Evaluation Engine

Evaluates stepwise ASTs one small step at a time. The whole evaluation context
lives on an explicit stack of plain-data states instead of the Python call
stack, so an interpreter can be paused between any two steps, serialized,
and resumed later (in another process if needed) with the same continuation.

Architecture:
- State stack: one State per pending node evaluation (node, ctx, value)
- Dispatch: fixed table mapping NodeKind -> step function
- Contexts: one record type per node kind, remembering how far evaluation got
- Propagation: a value returned by a step function is written into the frame
  left on top of the stack, which is the caller once the callee popped itself
- Trampoline: step functions never recurse; run() is a plain loop over step()

Serialized Shape:
    {"stateStack": [{"node": {...}, "ctx": {"index": 1}},
                    {"node": {"ref": "stmts", "index": 0}, "ctx": {...}},
                    {"node": {"ref": "expr"}, "ctx": {...}, "value": 42}],
     "halted": false}

    The root frame inlines the whole AST (immutable and acyclic). Every frame
    above it names the child its parent pushed ("left", "right", "expr", or
    "stmts" with an index), so a stack of depth D costs O(D) beyond the tree
    itself. "value" is omitted while the slot is empty.

Example:
    >>> program = Program([Print(BinOp('+', Literal(40), Literal(2)))])
    >>> Interpreter(program).run()
    42
    42

Reference: stepwise_ast.py (node kinds), st_codec.py (text wire format)
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass
import json
import logging
import operator
import sys

from .stepwise_ast import (
    Number, NodeKind, Operator, ASTNode, Literal, BinOp, Print, Program,
    StepwiseError, UnknownNodeKind, InvalidProgram,
    is_number, node_kind, node_to_dict, node_from_dict,
)
from .st_codec import STError, encode_st, decode_st


logger = logging.getLogger(__name__)

Value = Number
PrintSink = Callable[[Value], None]

# Reference from a frame to the child its parent pushed, e.g. {"ref": "left"}
ChildRef = Dict[str, Any]


# ============================================================================
# Error Definitions
# ============================================================================

E_STACK_UNDERFLOW = "E_STACK_UNDERFLOW"
E_UNSUPPORTED_OPERATOR = "E_UNSUPPORTED_OPERATOR"
E_VALUELESS_OPERAND = "E_VALUELESS_OPERAND"
E_CORRUPT_STATE = "E_CORRUPT_STATE"


class StackUnderflow(StepwiseError):
    """step() was invoked with an empty state stack"""
    def __init__(self, message: str = "Stack underflow"):
        super().__init__(E_STACK_UNDERFLOW, message)


class UnsupportedOperator(StepwiseError):
    """A binary operator outside the supported set was applied"""
    def __init__(self, op: Any, message: Optional[str] = None, code: str = E_UNSUPPORTED_OPERATOR):
        self.op = op
        super().__init__(code, message or f"Unsupported operator: {op!r}")


class ValuelessOperand(UnsupportedOperator):
    """An operand finished without producing a value (e.g. a nested print)"""
    def __init__(self, consumer: str):
        super().__init__(
            consumer,
            f"{consumer} operand produced no value (print yields no value to an expression)",
            code=E_VALUELESS_OPERAND,
        )


class CorruptState(StepwiseError):
    """Serialized interpreter state failed structural validation"""
    def __init__(self, message: str):
        super().__init__(E_CORRUPT_STATE, message)


# ============================================================================
# Evaluation Contexts (one record per node kind)
# ============================================================================

@dataclass
class LiteralContext:
    """Literals finish in one step and keep no progress"""

    def to_dict(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node: Literal) -> 'LiteralContext':
        return cls()

    def pushed_child(self, node: Literal) -> Optional[Tuple[ChildRef, ASTNode]]:
        return None


@dataclass
class BinOpContext:
    """Progress of a binary operation

    state 0: left not yet pushed
    state 1: left pushed, its value arrives in the frame's value slot
    state 2: right pushed, left operand saved in ``left``
    """
    state: int = 0
    left: Optional[Number] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'state': self.state, 'left': self.left}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node: BinOp) -> 'BinOpContext':
        state = _require(data, 'state', 'binop')
        if not _is_int(state) or state not in (0, 1, 2):
            raise CorruptState(f"binop ctx 'state' must be 0, 1 or 2, got {state!r}")
        left = data.get('left')
        if left is not None and not is_number(left):
            raise CorruptState(f"binop ctx 'left' must be a number, got {type(left).__name__}")
        if state == 2 and left is None:
            raise CorruptState("binop ctx in state 2 has no left operand")
        return cls(state=state, left=left)

    def pushed_child(self, node: BinOp) -> Optional[Tuple[ChildRef, ASTNode]]:
        """The operand most recently pushed, or None before the first push"""
        if self.state == 1:
            return {'ref': 'left'}, node.left
        if self.state == 2:
            return {'ref': 'right'}, node.right
        return None


@dataclass
class PrintContext:
    """Whether the printed expression has been pushed"""
    expr_done: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'exprDone': self.expr_done}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node: Print) -> 'PrintContext':
        expr_done = _require(data, 'exprDone', 'print')
        if not isinstance(expr_done, bool):
            raise CorruptState(f"print ctx 'exprDone' must be a boolean, got {expr_done!r}")
        return cls(expr_done=expr_done)

    def pushed_child(self, node: Print) -> Optional[Tuple[ChildRef, ASTNode]]:
        if self.expr_done:
            return {'ref': 'expr'}, node.expr
        return None


@dataclass
class ProgramContext:
    """Index of the next statement to push"""
    index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'index': self.index}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], node: Program) -> 'ProgramContext':
        index = _require(data, 'index', 'program')
        if not _is_int(index) or not 0 <= index <= len(node.stmts):
            raise CorruptState(
                f"program ctx 'index' must be in 0..{len(node.stmts)}, got {index!r}"
            )
        return cls(index=index)

    def pushed_child(self, node: Program) -> Optional[Tuple[ChildRef, ASTNode]]:
        # index already points past the statement that was pushed
        if self.index == 0:
            return None
        return {'ref': 'stmts', 'index': self.index - 1}, node.stmts[self.index - 1]


def _require(data: Dict[str, Any], key: str, kind: str) -> Any:
    if key not in data:
        raise CorruptState(f"{kind} ctx is missing '{key}'")
    return data[key]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


CONTEXT_TYPES: Dict[NodeKind, type] = {
    NodeKind.LITERAL: LiteralContext,
    NodeKind.BINOP: BinOpContext,
    NodeKind.PRINT: PrintContext,
    NodeKind.PROGRAM: ProgramContext,
}


# ============================================================================
# Evaluation State
# ============================================================================

@dataclass
class State:
    """One frame of the state stack"""
    node: ASTNode
    ctx: Any
    value: Optional[Value] = None

    def take_value(self) -> Optional[Value]:
        """Read the propagated value and empty the slot"""
        value = self.value
        self.value = None
        return value

    def to_dict(self, parent: Optional['State'] = None, position: int = 0) -> Dict[str, Any]:
        """
        Serialize this frame

        The root frame (no parent) inlines its whole subtree; any other frame
        refers to the child its parent pushed.

        Raises:
            CorruptState: If the node is not the child the parent pushed
        """
        if parent is None:
            node = node_to_dict(self.node)
        else:
            pushed = parent.ctx.pushed_child(parent.node)
            if pushed is None or pushed[1] is not self.node:
                raise CorruptState(f"Frame {position} is not the child its parent pushed")
            node = pushed[0]

        frame = {'node': node, 'ctx': self.ctx.to_dict()}
        if self.value is not None:
            frame['value'] = self.value
        return frame

    @classmethod
    def from_dict(cls, frame: Any, position: int = 0, parent: Optional['State'] = None) -> 'State':
        """
        Rebuild a frame from its serialized form

        Args:
            frame: Serialized frame
            position: Index of the frame in the stack (for error messages)
            parent: Already rebuilt frame below this one (None for the root)

        Raises:
            CorruptState: If the frame, its node, ctx or value is malformed,
                or it does not continue its parent's progress
        """
        if not isinstance(frame, dict):
            raise CorruptState(f"Frame {position} is not a record")
        if 'node' not in frame or 'ctx' not in frame:
            raise CorruptState(f"Frame {position} needs 'node' and 'ctx'")

        if parent is None:
            try:
                node = node_from_dict(frame['node'])
            except StepwiseError as e:
                raise CorruptState(f"Frame {position}: {e.message}") from e
        else:
            node = _resolve_child(frame['node'], parent, position)

        kind = node_kind(node)
        if kind not in STEP_FUNCTIONS:
            raise CorruptState(f"Frame {position}: no step function for {kind.value!r}")

        raw_ctx = frame['ctx']
        if not isinstance(raw_ctx, dict):
            raise CorruptState(f"Frame {position}: ctx must be a record")
        ctx = CONTEXT_TYPES[kind].from_dict(raw_ctx, node)

        value = frame.get('value')
        if value is not None and not is_number(value):
            raise CorruptState(f"Frame {position}: value must be a number, got {type(value).__name__}")

        return cls(node=node, ctx=ctx, value=value)


def _resolve_child(ref: Any, parent: State, position: int) -> ASTNode:
    """Resolve a child reference against the progress of the frame below"""
    pushed = parent.ctx.pushed_child(parent.node)
    if pushed is None:
        raise CorruptState(
            f"Frame {position} sits on a {node_kind(parent.node).value} frame with no child in progress"
        )
    expected, child = pushed
    if ref != expected:
        raise CorruptState(f"Frame {position}: node reference {ref!r} does not match {expected!r}")
    return child


# ============================================================================
# Step Functions
# ============================================================================

# Each step function is a small state machine keyed by its frame's ctx.
# Per call it either pushes one child or pops its own frame, and may return
# a value for the engine to propagate.

OPERATIONS: Dict[Operator, Callable[[Number, Number], Number]] = {
    Operator.ADD: operator.add,
    Operator.MULTIPLY: operator.mul,
}


def apply_operator(op: Any) -> Callable[[Number, Number], Number]:
    """Resolve an operator symbol to its implementation"""
    try:
        return OPERATIONS[Operator(op)]
    except (ValueError, KeyError):
        raise UnsupportedOperator(op) from None


def step_literal(interp: 'Interpreter', state: State) -> Optional[Value]:
    interp.pop_state()
    return state.node.value


def step_binop(interp: 'Interpreter', state: State) -> Optional[Value]:
    ctx = state.ctx

    if ctx.state == 0:
        interp.push_state(state.node.left)
        ctx.state = 1
        return None

    if ctx.state == 1:
        # The left child popped itself and left its result in our slot
        left = state.take_value()
        if left is None:
            raise ValuelessOperand('binop left')
        ctx.left = left
        interp.push_state(state.node.right)
        ctx.state = 2
        return None

    func = apply_operator(state.node.op)
    right = state.take_value()
    if right is None:
        raise ValuelessOperand('binop right')
    interp.pop_state()
    return func(ctx.left, right)


def step_print(interp: 'Interpreter', state: State) -> Optional[Value]:
    if not state.ctx.expr_done:
        interp.push_state(state.node.expr)
        state.ctx.expr_done = True
        return None

    value = state.take_value()
    if value is None:
        raise ValuelessOperand('print')
    interp.print_sink(value)

    parent = interp.parent_of(state)
    interp.pop_state()
    # As a statement the printed value becomes the program's latest result;
    # inside an expression a print yields nothing.
    if parent is None or node_kind(parent.node) is NodeKind.PROGRAM:
        return value
    return None


def step_program(interp: 'Interpreter', state: State) -> Optional[Value]:
    stmts = state.node.stmts
    if state.ctx.index < len(stmts):
        interp.push_state(stmts[state.ctx.index])
        state.ctx.index += 1
    elif interp.depth > 1:
        # A nested program finishes like a block and hands up its last result
        interp.pop_state()
        return state.take_value()
    else:
        # Frame stays on the stack so the result can be inspected
        interp.halted = True
    return None


STEP_FUNCTIONS: Dict[NodeKind, Callable[['Interpreter', State], Optional[Value]]] = {
    NodeKind.LITERAL: step_literal,
    NodeKind.BINOP: step_binop,
    NodeKind.PRINT: step_print,
    NodeKind.PROGRAM: step_program,
}


# ============================================================================
# Print Sinks
# ============================================================================

def stream_sink(stream=None) -> PrintSink:
    """Print sink writing one line per value (stdout by default)"""
    def sink(value: Value):
        out = stream if stream is not None else sys.stdout
        out.write(f"{value}\n")
    return sink


class CollectingSink:
    """Print sink that records values in order"""

    def __init__(self):
        self.values: List[Value] = []

    def __call__(self, value: Value):
        self.values.append(value)


# ============================================================================
# Interpreter
# ============================================================================

class Interpreter:
    """
    Small-step interpreter over an explicit state stack

    Usage:
        interp = Interpreter(program)
        interp.step()                 # one unit of work
        data = interp.serialize()     # pause
        interp2 = Interpreter.deserialize(data)
        interp2.run()                 # resume
    """

    def __init__(self, ast: ASTNode, print_sink: Optional[PrintSink] = None):
        if ast is None:
            raise InvalidProgram("Interpreter needs a root node")
        if not isinstance(ast, ASTNode):
            raise InvalidProgram(f"Root must be an AST node, got {type(ast).__name__}")
        self._reset(print_sink)
        self.push_state(ast)

    def _reset(self, print_sink: Optional[PrintSink]):
        self.state_stack: List[State] = []
        self.halted = False
        self.steps_taken = 0
        self.print_sink = print_sink if print_sink is not None else stream_sink()

    # ------------------------------------------------------------------
    # Stack primitives
    # ------------------------------------------------------------------

    def tos(self) -> State:
        """Return the state on top of the stack"""
        if not self.state_stack:
            raise StackUnderflow()
        return self.state_stack[-1]

    def push_state(self, node: ASTNode) -> State:
        """Push a fresh state for a node, with an empty context"""
        kind = node_kind(node)
        ctx_type = CONTEXT_TYPES.get(kind)
        if ctx_type is None:
            raise UnknownNodeKind(kind)
        state = State(node=node, ctx=ctx_type())
        self.state_stack.append(state)
        return state

    def pop_state(self) -> State:
        """
        Pop the top state

        The root frame is never removed: popping it halts the interpreter
        and keeps the frame so its value stays inspectable.
        """
        if not self.state_stack:
            raise StackUnderflow()
        if len(self.state_stack) == 1:
            self.halted = True
            return self.state_stack[0]
        return self.state_stack.pop()

    def parent_of(self, state: State) -> Optional[State]:
        """Return the frame directly below the top, if ``state`` is on top"""
        if len(self.state_stack) < 2 or self.state_stack[-1] is not state:
            return None
        return self.state_stack[-2]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def step(self) -> bool:
        """
        Execute exactly one evaluation step

        Returns:
            True while there is more work to do

        Raises:
            StackUnderflow: If the stack is empty
            UnknownNodeKind: If the top node has no step function
            UnsupportedOperator: If a binary operator cannot be applied
        """
        if self.halted:
            return False

        state = self.tos()
        kind = state.node.kind
        step_function = STEP_FUNCTIONS.get(kind)
        if step_function is None:
            raise UnknownNodeKind(kind)

        logger.debug("Evaluating %s node", NodeKind(kind).value)
        value = step_function(self, state)
        self.steps_taken += 1

        # Write-after-call: the result goes to whichever frame is now on top,
        # which is the caller when the step function popped itself.
        if value is not None:
            self.tos().value = value

        if self.halted:
            logger.info("Halted after %d steps", self.steps_taken)
        return not self.halted

    def run(self) -> Optional[Value]:
        """Step until halted and return the root frame's value"""
        while self.step():
            pass
        return self.result

    @property
    def result(self) -> Optional[Value]:
        """Value held by the root frame"""
        if not self.state_stack:
            return None
        return self.state_stack[0].value

    @property
    def depth(self) -> int:
        return len(self.state_stack)

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def serialize(self) -> Dict[str, Any]:
        """Capture the state stack and halted flag as plain data"""
        return {
            'stateStack': [
                state.to_dict(self.state_stack[i - 1] if i else None, i)
                for i, state in enumerate(self.state_stack)
            ],
            'halted': self.halted,
        }

    @classmethod
    def deserialize(cls, data: Any, print_sink: Optional[PrintSink] = None) -> 'Interpreter':
        """
        Rebuild an interpreter from serialized data

        No initial state is pushed; the stack is exactly the persisted one.

        Raises:
            CorruptState: If the data fails structural validation
        """
        if not isinstance(data, dict):
            raise CorruptState(f"Serialized state must be a record, got {type(data).__name__}")

        frames = data.get('stateStack')
        if not isinstance(frames, list):
            raise CorruptState("Serialized state has no 'stateStack' list")
        if not frames:
            raise CorruptState("Serialized state stack is empty")

        halted = data.get('halted')
        if not isinstance(halted, bool):
            raise CorruptState(f"'halted' must be a boolean, got {halted!r}")

        if halted and len(frames) > 1:
            raise CorruptState(f"Halted state must hold only the root frame, got {len(frames)} frames")

        states: List[State] = []
        for i, frame in enumerate(frames):
            states.append(State.from_dict(frame, i, states[-1] if states else None))

        interp = cls.__new__(cls)
        interp._reset(print_sink)
        interp.state_stack = states
        interp.halted = halted
        logger.debug("Restored %d frames (halted=%s)", len(states), halted)
        return interp

    def to_json(self) -> str:
        return json.dumps(self.serialize(), separators=(',', ':'))

    @classmethod
    def from_json(cls, text: str, print_sink: Optional[PrintSink] = None) -> 'Interpreter':
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptState(f"Invalid JSON: {e}") from e
        return cls.deserialize(data, print_sink)

    def to_text(self) -> str:
        """Serialize to the ST text wire format"""
        return encode_st(self.serialize())

    @classmethod
    def from_text(cls, text: str, print_sink: Optional[PrintSink] = None) -> 'Interpreter':
        try:
            data = decode_st(text)
        except STError as e:
            raise CorruptState(str(e)) from e
        return cls.deserialize(data, print_sink)

    def __repr__(self) -> str:
        top = self.state_stack[-1].node.kind.value if self.state_stack else None
        return f"Interpreter(depth={self.depth}, top={top!r}, halted={self.halted})"


# ============================================================================
# Convenience Functions
# ============================================================================

def execute_stepwise(ast: ASTNode, print_sink: Optional[PrintSink] = None) -> Optional[Value]:
    """
    Run an AST to completion (convenience function)

    Example:
        >>> execute_stepwise(Program([Print(Literal(7))]))
        7
        7
    """
    return Interpreter(ast, print_sink).run()


# print 40 + 2
# print (1 + 4) * 5
DEMO_PROGRAM = Program([
    Print(BinOp('+', Literal(40), Literal(2))),
    Print(BinOp('*', BinOp('+', Literal(1), Literal(4)), Literal(5))),
])

# Steps needed to finish the first print of DEMO_PROGRAM
DEMO_PAUSE_STEPS = 8


def run_demo(print_sink: Optional[PrintSink] = None, out=None) -> Optional[Value]:
    """Run DEMO_PROGRAM, pausing after the first print and resuming from text"""
    out = out if out is not None else sys.stdout
    interp = Interpreter(DEMO_PROGRAM, print_sink)
    for _ in range(DEMO_PAUSE_STEPS):
        interp.step()

    saved = interp.to_text()
    out.write("\nPaused!\n\n")

    # The paused interpreter is dropped; evaluation continues from the text alone
    resumed = Interpreter.from_text(saved, print_sink)
    return resumed.run()


# ============================================================================
# Exports
# ============================================================================

__all__ = [
    'Value',
    'PrintSink',
    'Interpreter',
    'State',
    'LiteralContext',
    'BinOpContext',
    'PrintContext',
    'ProgramContext',
    'CONTEXT_TYPES',
    'STEP_FUNCTIONS',
    'OPERATIONS',
    'apply_operator',
    'StackUnderflow',
    'UnsupportedOperator',
    'ValuelessOperand',
    'CorruptState',
    'E_STACK_UNDERFLOW',
    'E_UNSUPPORTED_OPERATOR',
    'E_VALUELESS_OPERAND',
    'E_CORRUPT_STATE',
    'stream_sink',
    'CollectingSink',
    'execute_stepwise',
    'DEMO_PROGRAM',
    'DEMO_PAUSE_STEPS',
    'run_demo',
]
