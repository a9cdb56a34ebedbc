'''
Constant folding, deobfuscation rules and cleanup passes
'''

import math
import unittest

from qjs_assembler import *

from deqjs import DecompileOptions, decompile
from deqjs.common import get_config
from deqjs.ir import *
from deqjs.ir.passes.folding import normalize_number
from deqjs.quickjs import AtomTable, FormatVersion, FunctionInfo, Module


def num(v) -> Literal:
    return Literal.number(v)


def string(v) -> Literal:
    return Literal.string(v)


def call(name: str, *args) -> Call:
    return Call(Identifier(name), list(args))


def stmt(expr: Expression) -> ExpressionStatement:
    return ExpressionStatement(expr)


def assign(target: Expression, value: Expression) -> ExpressionStatement:
    return ExpressionStatement(Assignment(target, value))


def function(index: int, body: list[Statement], name: str = 'f', arg_count: int = 0,
             scope: Scope | None = None) -> FunctionIR:
    return FunctionIR(FunctionInfo(index = index, arg_count = arg_count), scope or Scope(), name, [], Block(body))


def program(*functions: FunctionIR) -> ProgramIR:
    return ProgramIR(Module(FormatVersion.CURRENT, AtomTable(())), list(functions))


class TestConstantFolding(unittest.TestCase):

    def fold(self, op: str, a, b) -> Expression:
        return fold_constants(BinaryOp(op, a, b))

    def test_arithmetic(self):
        self.assertEqual(self.fold('+', num(1), num(2)), num(3))
        self.assertEqual(self.fold('**', num(2), num(10)), num(1024))
        self.assertEqual(self.fold('%', num(-7), num(2)), num(-1))
        self.assertEqual(self.fold('<<', num(1), num(31)), num(-2147483648))
        self.assertEqual(self.fold('>>>', num(-1), num(0)), num(4294967295))

    def test_division_by_zero(self):
        self.assertEqual(str(self.fold('/', num(0), num(0))), 'NaN')
        self.assertEqual(str(self.fold('/', num(1), num(0))), 'Infinity')
        self.assertEqual(str(self.fold('/', num(-1), num(0))), '-Infinity')

    def test_string_coercion(self):
        self.assertEqual(self.fold('+', string('a'), num(1)), string('a1'))
        self.assertEqual(self.fold('*', string('5'), num(2)), num(10))
        self.assertEqual(self.fold('-', string('x'), num(1)), num(math.nan))

    def test_equality(self):
        nan = num(math.nan)
        self.assertEqual(self.fold('===', nan, nan), Literal.boolean(False))
        self.assertEqual(self.fold('==', Literal.null(), Literal.undefined()), Literal.boolean(True))
        self.assertEqual(self.fold('===', Literal.null(), Literal.undefined()), Literal.boolean(False))
        self.assertEqual(self.fold('==', string('1'), num(1)), Literal.boolean(True))

    def test_unary_and_logical(self):
        self.assertEqual(fold_constants(UnaryOp('!', Literal.boolean(True))), Literal.boolean(False))
        self.assertEqual(fold_constants(UnaryOp('typeof', string('x'))), string('string'))
        self.assertEqual(fold_constants(BinaryOp('&&', Literal.boolean(True), Identifier('b'))), Identifier('b'))
        self.assertEqual(fold_constants(BinaryOp('??', Literal.null(), num(4))), num(4))

    def test_unknown_operands_are_kept(self):
        expr = BinaryOp('+', Identifier('a'), num(1))
        self.assertIs(fold_constants(expr), expr)

    def test_known_truthiness(self):
        self.assertIs(known_truthiness(ObjectLiteral()), True)
        self.assertIs(known_truthiness(string('')), False)
        self.assertIs(known_truthiness(num(math.nan)), False)
        self.assertIsNone(known_truthiness(Identifier('x')))

    def test_normalize_number(self):
        self.assertEqual(normalize_number(3.0), 3)
        self.assertIsInstance(normalize_number(3.0), int)
        self.assertIsInstance(normalize_number(-0.0), float)
        self.assertIsInstance(normalize_number(2.0 ** 60), float)


class TestDeobfuscation(unittest.TestCase):

    def test_opaque_predicate(self):
        fn = function(0, [
            If(BinaryOp('<', num(1), num(2)), Block([stmt(call('g'))]), Block([stmt(call('h'))])),
            While(Literal.boolean(False), Block([stmt(call('never'))])),
        ])
        OpaquePredicatePass().run(program(fn))
        self.assertEqual(fn.body, Block([stmt(call('g'))]))

    def test_impure_condition_is_kept(self):
        cond = BinaryOp('<', call('f'), num(2))
        fn = function(0, [If(cond, Block([stmt(call('g'))]))])
        OpaquePredicatePass().run(program(fn))
        self.assertIsInstance(fn.body.statements[0], If)

    def test_junk_code(self):
        fn = function(0, [
            stmt(num(1)),
            If(Identifier('a'), Block([])),
            Return(call('g')),
            stmt(call('h')),
        ])
        JunkCodePass().run(program(fn))
        self.assertEqual(fn.body, Block([Return(call('g'))]))

    def test_string_array(self):
        table = Identifier('_0x12ab')
        entry = function(0, [
            assign(table, ArrayLiteral([string('hello'), string('world')])),
            stmt(call('init')),
        ], name = '<eval>')
        user = function(1, [stmt(call('log', MemberAccess(Identifier('_0x12ab'), num(1), computed = True)))])

        StringArrayPass().run(program(entry, user))
        self.assertEqual(user.body, Block([stmt(call('log', string('world')))]))

    def test_string_array_written_elsewhere(self):
        table = Identifier('_0x12ab')
        entry = function(0, [assign(table, ArrayLiteral([string('hello')]))], name = '<eval>')
        user = function(1, [
            assign(MemberAccess(Identifier('_0x12ab'), num(0), computed = True), string('bye')),
            stmt(call('log', MemberAccess(Identifier('_0x12ab'), num(0), computed = True))),
        ])
        before = user.body

        StringArrayPass().run(program(entry, user))
        self.assertEqual(user.body, before)

    def test_string_array_read_as_a_whole(self):
        '''the declaring store and the bare read share one Identifier object'''
        table = Identifier('_0x12ab')
        entry = function(0, [assign(table, ArrayLiteral([string('hello')]))], name = '<eval>')
        user = function(1, [
            stmt(call('log', MemberAccess(table, num(0), computed = True))),
            stmt(call('dump', table)),
        ])
        before = user.body

        StringArrayPass().run(program(entry, user))
        self.assertEqual(user.body, before)

    def test_flattened_dispatcher(self):
        state = Identifier('s', Slot(BindingKind.LOC, 0))
        dispatcher = While(Literal.boolean(True), Block([Switch(state, [
            SwitchCase(num(0), [stmt(call('a')), assign(state, num(2)), Break()]),
            SwitchCase(num(1), [Return(call('c'))]),
            SwitchCase(num(2), [stmt(call('b')), assign(state, num(1)), Break()]),
        ])]))
        fn = function(0, [assign(state, num(0)), dispatcher])

        FlatteningPass().run(program(fn))
        self.assertEqual(fn.body, Block([stmt(call('a')), stmt(call('b')), Return(call('c'))]))

    def test_dispatcher_with_unknown_state_is_kept(self):
        state = Identifier('s', Slot(BindingKind.LOC, 0))
        dispatcher = While(Literal.boolean(True), Block([Switch(state, [
            SwitchCase(num(0), [stmt(call('a')), assign(state, call('next')), Break()]),
        ])]))
        fn = function(0, [assign(state, num(0)), dispatcher])

        FlatteningPass().run(program(fn))
        self.assertIsInstance(fn.body.statements[1], While)

    def test_proxy_inlining(self):
        x = Identifier('x', Slot(BindingKind.ARG, 0))
        y = Identifier('y', Slot(BindingKind.ARG, 1))
        proxy = function(1, [Return(BinaryOp('+', x, y))], name = '', arg_count = 2)
        entry = function(0, [
            assign(Identifier('add'), FunctionRef(1)),
            stmt(call('log', call('add', num(1), Identifier('z')))),
        ], name = '<eval>')

        ProxyInliningPass().run(program(entry, proxy))
        self.assertEqual(entry.body.statements[1], stmt(call('log', BinaryOp('+', num(1), Identifier('z')))))

    def test_proxy_with_reordered_side_effects(self):
        '''impure arguments are not inlined out of order'''
        x = Identifier('x', Slot(BindingKind.ARG, 0))
        y = Identifier('y', Slot(BindingKind.ARG, 1))
        proxy = function(1, [Return(BinaryOp('-', y, x))], name = '', arg_count = 2)
        original = stmt(call('add', call('f'), call('g')))
        entry = function(0, [assign(Identifier('add'), FunctionRef(1)), original], name = '<eval>')

        ProxyInliningPass().run(program(entry, proxy))
        self.assertIs(entry.body.statements[1], original)

    def test_closure_naming(self):
        anonymous = function(1, [Return()], name = '')
        entry = function(0, [stmt(call('setTimeout', FunctionRef(1), num(10)))], name = '<eval>')

        ClosureNamingPass().run(program(entry, anonymous))
        self.assertEqual(anonymous.name, 'closure_1')
        self.assertEqual(entry.body.statements[0].expr.args[0], FunctionRef(1, 'closure_1'))

    def test_fixed_point(self):
        fn = function(0, [
            If(Literal.boolean(True), Block([
                If(UnaryOp('!', Literal.boolean(False)), Block([stmt(call('g'))])),
            ])),
        ])
        pipeline = build_deobfuscation_pipeline(max_iterations = 5)
        pipeline.run(program(fn))

        self.assertEqual(fn.body, Block([stmt(call('g'))]))
        self.assertEqual(pipeline.iterations, 2)


class TestOptimization(unittest.TestCase):

    def test_constant_folding_pass(self):
        fn = function(0, [Return(BinaryOp('+', num(1), BinaryOp('*', num(2), num(3))))])
        ConstantFoldingPass().run(program(fn))
        self.assertEqual(fn.body, Block([Return(num(7))]))

    def test_temp_inlining(self):
        scope = Scope()
        temp = scope.new_temp()
        fn = function(0, [assign(temp, call('f')), Return(BinaryOp('+', temp, num(1)))], scope = scope)

        TempInliningPass().run(program(fn))
        self.assertEqual(fn.body, Block([Return(BinaryOp('+', call('f'), num(1)))]))

    def test_temp_read_after_side_effect(self):
        '''`$s0 = f(); return g() + $s0;` would call g first once inlined'''
        scope = Scope()
        temp = scope.new_temp()
        body = [assign(temp, call('f')), Return(BinaryOp('+', call('g'), temp))]
        fn = function(0, body, scope = scope)

        TempInliningPass().run(program(fn))
        self.assertEqual(len(fn.body.statements), 2)

    def test_joined_temp_is_live(self):
        '''one Identifier object is both the store target in each arm and the read'''
        scope = Scope()
        temp = scope.new_temp()
        body = [
            If(Identifier('a'), Block([stmt(call('h')), assign(temp, num(1))]),
               Block([stmt(call('k')), assign(temp, num(2))])),
            Return(BinaryOp('+', Identifier('x'), temp)),
        ]
        fn = function(0, body, scope = scope)
        before = fn.body

        build_optimization_pipeline().run(program(fn))
        self.assertEqual(fn.body, before)

    def test_dead_store(self):
        scope = Scope()
        binding = scope.add(BindingKind.LOC, 0, 'x', 'loc0')
        x = Identifier(binding.name, binding.slot)
        fn = function(0, [assign(x, call('g')), assign(x, num(5)), Return(num(1))], scope = scope)

        DeadStorePass().run(program(fn))
        self.assertEqual(fn.body, Block([stmt(call('g')), Return(num(1))]))

    def test_captured_store_is_kept(self):
        scope = Scope()
        binding = scope.add(BindingKind.LOC, 0, 'x', 'loc0')
        binding.captured = True
        x = Identifier(binding.name, binding.slot)
        fn = function(0, [assign(x, num(5)), Return()], scope = scope)

        DeadStorePass().run(program(fn))
        self.assertEqual(len(fn.body.statements), 2)

    def test_trailing_return(self):
        fn = function(0, [stmt(call('g')), Return(Literal.undefined())])
        TrailingReturnPass().run(program(fn))
        self.assertEqual(fn.body, Block([stmt(call('g'))]))

        fn = function(0, [stmt(call('g')), Return(num(0))])
        TrailingReturnPass().run(program(fn))
        self.assertEqual(len(fn.body.statements), 2)

    def test_label_cleanup(self):
        fn = function(0, [Goto('L5'), Label('L5'), stmt(call('g')), Label('L9'), Return()])
        LabelCleanupPass().run(program(fn))
        self.assertEqual(fn.body, Block([stmt(call('g')), Return()]))

    def test_pipeline_reaches_fixed_point(self):
        scope = Scope()
        temp = scope.new_temp()
        fn = function(0, [
            assign(temp, BinaryOp('+', num(2), num(3))),
            Return(BinaryOp('*', temp, num(2))),
        ], scope = scope)

        pipeline = build_optimization_pipeline(max_iterations = 8)
        pipeline.run(program(fn))

        self.assertEqual(fn.body, Block([Return(num(10))]))
        self.assertLess(pipeline.iterations, 8)


class TestPassesEndToEnd(unittest.TestCase):

    def setUp(self):
        get_config().reset()

    def test_deobfuscate_names_closures(self):
        jsc = JscBuilder()
        anonymous = jsc.function('', code = [('return_undef',)])
        data = jsc.build(jsc.function('<eval>', cpool = [anonymous], code = [
            ('get_var', 'setTimeout'), ('fclosure', 0), ('push_i8', 10), ('call2',), ('drop',),
            ('return_undef',),
        ]))

        plain = decompile(data, DecompileOptions(indent = '  '))
        self.assertIn('setTimeout(<function:1>, 10);', plain.text)

        named = decompile(data, DecompileOptions(indent = '  ', deobfuscate = True))
        self.assertIn('setTimeout(closure_1, 10);', named.text)
        self.assertIn('function closure_1() {', named.text)

    def test_optimize_folds_constants(self):
        jsc = JscBuilder()
        fn = jsc.function('f', code = [('push_2',), ('push_3',), ('mul',), ('return',)])
        data = jsc.build(jsc.function('<eval>', cpool = [fn], code = [('return_undef',)]))

        result = decompile(data, DecompileOptions(indent = '  ', optimize = True))
        self.assertIn('function f() { return 6; }', result.text)

    def test_optimize_keeps_joined_stack_values(self):
        jsc = JscBuilder()
        fn = jsc.function('f', args = ['a'], code = [
            ('get_var', 'x'), ('get_arg0',),
            ('if_false', 'else'),
            ('get_var', 'h'), ('call0',), ('drop',), ('push_1',),
            ('goto', 'end'),
            'else',
            ('get_var', 'k'), ('call0',), ('drop',), ('push_2',),
            'end',
            ('add',), ('return',),
        ])
        data = jsc.build(jsc.function('<eval>', cpool = [fn], code = [('return_undef',)]))
        text = decompile(data, DecompileOptions(indent = '  ', optimize = True)).text

        self.assertIn('$s0 = x;', text)
        self.assertIn('$s1 = 1;', text)
        self.assertIn('$s1 = 2;', text)
        self.assertIn('return $s0 + $s1;', text)


if __name__ == '__main__':
    unittest.main()
