"""
Test suite for interpreter pause/resume
Verifies serialize/deserialize shape, resume equivalence and corrupt-state checks
"""

import pytest
import sys
import os
import copy
import json
import math

# Add grandparent directory to path for imports (to find stepwise_runtime package)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from stepwise_runtime.stepwise_ast import Literal, BinOp, Print, Program
from stepwise_runtime.stepwise_runtime import (
    Interpreter, State, LiteralContext, CollectingSink, CorruptState, E_CORRUPT_STATE,
    DEMO_PROGRAM, DEMO_PAUSE_STEPS, run_demo,
)


PROGRAMS = [
    DEMO_PROGRAM,
    Program([]),
    Program([Print(Literal(7))]),
    Program([
        BinOp('+', Literal(1), Literal(2)),
        Print(BinOp('*', BinOp('*', Literal(2), Literal(3)), BinOp('+', Literal(0.5), Literal(0.5)))),
        Print(Literal(-4)),
    ]),
    BinOp('*', Literal(6), BinOp('+', Literal(3), Literal(4))),
    Program([Program([Print(Literal(1)), Literal(2)]), Print(BinOp('+', Program([Literal(3)]), Literal(4)))]),
]


def total_steps(ast):
    interp = Interpreter(ast, CollectingSink())
    interp.run()
    return interp.steps_taken


def paused(ast, steps, sink=None):
    interp = Interpreter(ast, sink if sink is not None else CollectingSink())
    for _ in range(steps):
        interp.step()
    return interp


class TestSerializedShape:
    """Test the logical serialized form"""

    def test_fresh_interpreter(self):
        interp = Interpreter(Program([]))
        assert interp.serialize() == {
            'stateStack': [
                {'node': {'kind': 'program', 'stmts': []}, 'ctx': {'index': 0}},
            ],
            'halted': False,
        }

    def test_root_inlines_tree_and_frames_refer_to_children(self):
        program = Program([Print(BinOp('+', Literal(40), Literal(2)))])
        data = paused(program, 4).serialize()

        frames = data['stateStack']
        assert len(frames) == 3
        assert frames[0] == {
            'node': {
                'kind': 'program',
                'stmts': [{
                    'kind': 'print',
                    'expr': {
                        'kind': 'binop', 'op': '+',
                        'left': {'kind': 'literal', 'value': 40},
                        'right': {'kind': 'literal', 'value': 2},
                    },
                }],
            },
            'ctx': {'index': 1},
        }
        assert frames[1] == {'node': {'ref': 'stmts', 'index': 0}, 'ctx': {'exprDone': True}}
        assert frames[2] == {'node': {'ref': 'expr'}, 'ctx': {'state': 1, 'left': None}, 'value': 40}
        assert data['halted'] is False

    def test_operand_references(self):
        program = Program([Print(BinOp('+', Literal(40), Literal(2)))])
        assert paused(program, 3).serialize()['stateStack'][3]['node'] == {'ref': 'left'}
        assert paused(program, 5).serialize()['stateStack'][3]['node'] == {'ref': 'right'}

    def test_serialize_rejects_foreign_frame(self):
        interp = paused(DEMO_PROGRAM, 4)
        interp.state_stack.append(State(node=Literal(40), ctx=LiteralContext()))
        with pytest.raises(CorruptState):
            interp.serialize()

    def test_halted_flag(self):
        interp = Interpreter(DEMO_PROGRAM, CollectingSink())
        interp.run()
        data = interp.serialize()
        assert data['halted'] is True
        assert data['stateStack'][0]['value'] == 25

    def test_is_json_data(self):
        data = paused(DEMO_PROGRAM, 10).serialize()
        assert json.loads(json.dumps(data)) == data

    def test_serialize_does_not_alias_live_state(self):
        interp = paused(DEMO_PROGRAM, 3)
        data = interp.serialize()
        snapshot = copy.deepcopy(data)
        interp.step()
        assert data == snapshot


class TestRoundTrip:
    """Test serialize -> deserialize"""

    def test_state_stack_equal(self):
        for k in range(total_steps(DEMO_PROGRAM) + 1):
            interp = paused(DEMO_PROGRAM, k)
            restored = Interpreter.deserialize(interp.serialize())
            assert restored.state_stack == interp.state_stack
            assert restored.halted == interp.halted

    def test_no_initial_state_pushed(self):
        interp = paused(DEMO_PROGRAM, 5)
        restored = Interpreter.deserialize(interp.serialize())
        assert restored.depth == interp.depth

    def test_reserialize_identical(self):
        data = paused(DEMO_PROGRAM, 6).serialize()
        assert Interpreter.deserialize(data).serialize() == data

    def test_json_round_trip(self):
        interp = paused(DEMO_PROGRAM, 9)
        restored = Interpreter.from_json(interp.to_json())
        assert restored.state_stack == interp.state_stack

    def test_text_round_trip(self):
        interp = paused(DEMO_PROGRAM, 9)
        restored = Interpreter.from_text(interp.to_text())
        assert restored.state_stack == interp.state_stack

    def test_halted_state_stays_halted(self):
        interp = Interpreter(DEMO_PROGRAM, CollectingSink())
        interp.run()
        sink = CollectingSink()
        restored = Interpreter.deserialize(interp.serialize(), sink)
        assert restored.step() is False
        assert restored.run() == 25
        assert sink.values == []


class TestResumeEquivalence:
    """Pausing at any step and resuming matches an uninterrupted run"""

    @pytest.mark.parametrize("program", PROGRAMS)
    def test_every_pause_point(self, program):
        expected_sink = CollectingSink()
        expected = Interpreter(program, expected_sink).run()

        for k in range(total_steps(program) + 1):
            before = CollectingSink()
            data = json.loads(paused(program, k, before).to_json())

            after = CollectingSink()
            resumed = Interpreter.deserialize(data, after)
            assert resumed.run() == expected
            assert before.values + after.values == expected_sink.values

    def test_second_print_after_resume(self):
        before = CollectingSink()
        data = paused(DEMO_PROGRAM, DEMO_PAUSE_STEPS, before).to_text()
        assert before.values == [42]

        after = CollectingSink()
        assert Interpreter.from_text(data, after).run() == 25
        assert after.values == [25]

    def test_repeated_pauses(self):
        sink = CollectingSink()
        interp = Interpreter(DEMO_PROGRAM, sink)
        while True:
            interp = Interpreter.from_text(interp.to_text(), sink)
            if not interp.step():
                break
        assert interp.result == 25
        assert sink.values == [42, 25]

    def test_resume_twice_from_same_data(self):
        data = paused(DEMO_PROGRAM, DEMO_PAUSE_STEPS).serialize()
        first, second = CollectingSink(), CollectingSink()
        Interpreter.deserialize(data, first).run()
        Interpreter.deserialize(data, second).run()
        assert first.values == second.values == [25]

    def test_run_demo(self, capsys):
        sink = CollectingSink()
        assert run_demo(sink) == 25
        assert sink.values == [42, 25]
        assert "Paused!" in capsys.readouterr().out


def valid_state():
    return paused(DEMO_PROGRAM, 4).serialize()


class TestCorruptState:
    """Test structural validation on deserialize"""

    def assert_corrupt(self, data):
        with pytest.raises(CorruptState) as exc_info:
            Interpreter.deserialize(data)
        assert exc_info.value.code == E_CORRUPT_STATE

    def test_valid_state_accepted(self):
        Interpreter.deserialize(valid_state())

    def test_not_a_record(self):
        self.assert_corrupt([1, 2, 3])

    def test_missing_stack(self):
        self.assert_corrupt({'halted': False})

    def test_empty_stack(self):
        self.assert_corrupt({'stateStack': [], 'halted': False})

    def test_missing_halted(self):
        data = valid_state()
        del data['halted']
        self.assert_corrupt(data)

    def test_halted_not_boolean(self):
        data = valid_state()
        data['halted'] = 0
        self.assert_corrupt(data)

    def test_frame_not_record(self):
        data = valid_state()
        data['stateStack'][1] = "print"
        self.assert_corrupt(data)

    def test_frame_without_ctx(self):
        data = valid_state()
        del data['stateStack'][1]['ctx']
        self.assert_corrupt(data)

    def test_unknown_node_kind(self):
        data = valid_state()
        data['stateStack'][0]['node']['stmts'].append({'kind': 'loop', 'body': []})
        self.assert_corrupt(data)

    def test_malformed_node(self):
        data = valid_state()
        data['stateStack'][0]['node']['stmts'][0]['expr'] = {'kind': 'binop', 'op': '+'}
        self.assert_corrupt(data)

    def test_binop_ctx_missing_state(self):
        data = valid_state()
        data['stateStack'][2]['ctx'] = {}
        self.assert_corrupt(data)

    def test_binop_ctx_state_out_of_range(self):
        data = valid_state()
        data['stateStack'][2]['ctx'] = {'state': 3, 'left': None}
        self.assert_corrupt(data)

    def test_binop_ctx_state_two_without_left(self):
        data = valid_state()
        data['stateStack'][2]['ctx'] = {'state': 2, 'left': None}
        self.assert_corrupt(data)

    def test_print_ctx_missing_flag(self):
        data = valid_state()
        data['stateStack'][1]['ctx'] = {}
        self.assert_corrupt(data)

    def test_print_ctx_flag_not_boolean(self):
        data = valid_state()
        data['stateStack'][1]['ctx'] = {'exprDone': 'yes'}
        self.assert_corrupt(data)

    def test_program_index_out_of_range(self):
        data = valid_state()
        data['stateStack'][0]['ctx'] = {'index': 7}
        self.assert_corrupt(data)

    def test_program_index_negative(self):
        data = valid_state()
        data['stateStack'][0]['ctx'] = {'index': -1}
        self.assert_corrupt(data)

    def test_value_not_number(self):
        data = valid_state()
        data['stateStack'][2]['value'] = "40"
        self.assert_corrupt(data)

    def test_value_boolean(self):
        data = valid_state()
        data['stateStack'][2]['value'] = True
        self.assert_corrupt(data)

    def test_invalid_json(self):
        with pytest.raises(CorruptState):
            Interpreter.from_json('{"stateStack": [')

    def test_invalid_text(self):
        with pytest.raises(CorruptState):
            Interpreter.from_text('{stateStack:[')

    def test_halted_with_pending_frames(self):
        data = valid_state()
        data['halted'] = True
        self.assert_corrupt(data)

    def test_unrelated_frame_above_unstarted_program(self):
        self.assert_corrupt({
            'stateStack': [
                {'node': {'kind': 'program', 'stmts': [{'kind': 'print', 'expr': {'kind': 'literal', 'value': 1}}]},
                 'ctx': {'index': 0}},
                {'node': {'kind': 'literal', 'value': 99}, 'ctx': {}},
            ],
            'halted': False,
        })

    def test_frame_above_unstarted_program(self):
        data = valid_state()
        data['stateStack'][0]['ctx'] = {'index': 0}
        self.assert_corrupt(data)

    def test_frame_above_print_before_push(self):
        data = valid_state()
        data['stateStack'][1]['ctx'] = {'exprDone': False}
        self.assert_corrupt(data)

    def test_frame_above_binop_before_push(self):
        data = paused(DEMO_PROGRAM, 3).serialize()
        data['stateStack'][2]['ctx'] = {'state': 0, 'left': None}
        self.assert_corrupt(data)

    def test_frame_above_literal(self):
        data = paused(DEMO_PROGRAM, 3).serialize()
        data['stateStack'].append({'node': {'ref': 'left'}, 'ctx': {}})
        self.assert_corrupt(data)

    def test_reference_to_wrong_operand(self):
        data = paused(DEMO_PROGRAM, 3).serialize()
        data['stateStack'][3]['node'] = {'ref': 'right'}
        self.assert_corrupt(data)

    def test_reference_to_wrong_statement(self):
        data = valid_state()
        data['stateStack'][1]['node'] = {'ref': 'stmts', 'index': 1}
        self.assert_corrupt(data)

    def test_reference_not_a_record(self):
        data = valid_state()
        data['stateStack'][2]['node'] = 'expr'
        self.assert_corrupt(data)

    def test_inline_node_above_root(self):
        data = valid_state()
        data['stateStack'][2]['node'] = {
            'kind': 'binop', 'op': '+',
            'left': {'kind': 'literal', 'value': 40},
            'right': {'kind': 'literal', 'value': 2},
        }
        self.assert_corrupt(data)


def deep_sum(depth):
    node = Literal(1)
    for _ in range(depth):
        node = BinOp('+', node, Literal(1))
    return node


class TestDeepPrograms:
    """Pause/resume of trees nested deeper than the recursion limit"""

    depth = sys.getrecursionlimit() * 2

    def paused_deep(self, sink):
        # Descend the whole left spine, then come back up part of the way
        return paused(Program([Print(deep_sum(self.depth))]), self.depth + 40, sink)

    def test_serialize_round_trip(self):
        before = CollectingSink()
        interp = self.paused_deep(before)
        assert interp.depth > sys.getrecursionlimit()

        restored = Interpreter.deserialize(interp.serialize(), CollectingSink())
        assert restored.depth == interp.depth
        assert restored.to_text() == interp.to_text()

    def test_text_round_trip_resumes(self):
        before = CollectingSink()
        text = self.paused_deep(before).to_text()
        assert before.values == []

        after = CollectingSink()
        assert Interpreter.from_text(text, after).run() == self.depth + 1
        assert after.values == [self.depth + 1]

    def test_frames_share_root_tree(self):
        restored = Interpreter.from_text(self.paused_deep(CollectingSink()).to_text())
        root = restored.state_stack[0].node
        assert restored.state_stack[1].node is root.stmts[0]
        assert restored.state_stack[2].node is root.stmts[0].expr
        assert restored.state_stack[3].node is root.stmts[0].expr.left

    def test_text_grows_linearly(self):
        small = paused(Program([Print(deep_sum(100))]), 102, CollectingSink()).to_text()
        large = paused(Program([Print(deep_sum(1000))]), 1002, CollectingSink()).to_text()
        assert len(large) < len(small) * 20


class TestNonFiniteValues:
    """Arithmetic overflow results survive a pause"""

    def test_infinity_in_text(self):
        program = Program([
            Print(BinOp('*', Literal(1e308), Literal(10.0))),
            Print(BinOp('*', Literal(-1e308), Literal(10.0))),
        ])
        interp = paused(program, 7)
        text = interp.to_text()
        assert "value:INF" in text

        after = CollectingSink()
        Interpreter.from_text(text, after).run()
        assert after.values == [math.inf, -math.inf]

    def test_nan_in_text(self):
        program = Program([Print(BinOp('*', Literal(math.inf), Literal(0)))])
        text = paused(program, 7).to_text()
        assert "value:NAN" in text

        after = CollectingSink()
        Interpreter.from_text(text, after).run()
        assert len(after.values) == 1
        assert math.isnan(after.values[0])
