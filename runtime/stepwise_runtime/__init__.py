"""
Stepwise Runtime - Pausable Small-Step Interpreter

This package provides an AST-walking interpreter whose entire execution state
is plain data, so it can be paused after any step and resumed later:

**Language:**
- AST: Literal, BinOp, Print, Program (frozen dataclasses)

**Engine:**
- Interpreter: explicit state stack, per-kind step functions, step/run
- Pause/resume: serialize()/deserialize(), JSON and ST text forms

**Persistence:**
- ST: Stepwise Text wire format (ASCII-safe, deterministic)
- Snapshot store: content-addressed states indexed in SQLite

Version: 1.0.0
"""

__version__ = '1.0.0'

# ============================================================================
# AST
# ============================================================================

from .stepwise_ast import (
    Number, NodeKind, Operator,
    ASTNode, Literal, BinOp, Print, Program,
    StepwiseError, UnknownNodeKind, InvalidProgram,
    node_to_dict, node_from_dict, count_nodes,
)

# ============================================================================
# Evaluation Engine
# ============================================================================

from .stepwise_runtime import (
    Value, PrintSink, Interpreter, State,
    LiteralContext, BinOpContext, PrintContext, ProgramContext,
    StackUnderflow, UnsupportedOperator, ValuelessOperand, CorruptState,
    stream_sink, CollectingSink, execute_stepwise,
    DEMO_PROGRAM, run_demo,
)

# ============================================================================
# Wire Format and Persistence
# ============================================================================

from .st_codec import (
    encode_st, decode_st, encode_state, decode_state, verify_st_bijection,
    STEncoder, STDecoder, STError,
)

from .snapshot_store import (
    SnapshotHandle, SnapshotStore, get_snapshot_store,
)

__all__ = [
    # AST
    'Number', 'NodeKind', 'Operator',
    'ASTNode', 'Literal', 'BinOp', 'Print', 'Program',
    'node_to_dict', 'node_from_dict', 'count_nodes',
    # Engine
    'Value', 'PrintSink', 'Interpreter', 'State',
    'LiteralContext', 'BinOpContext', 'PrintContext', 'ProgramContext',
    'stream_sink', 'CollectingSink', 'execute_stepwise',
    'DEMO_PROGRAM', 'run_demo',
    # Errors
    'StepwiseError', 'StackUnderflow', 'UnknownNodeKind', 'UnsupportedOperator',
    'ValuelessOperand', 'CorruptState', 'InvalidProgram',
    # Wire format
    'encode_st', 'decode_st', 'encode_state', 'decode_state', 'verify_st_bijection',
    'STEncoder', 'STDecoder', 'STError',
    # Persistence
    'SnapshotHandle', 'SnapshotStore', 'get_snapshot_store',
]
