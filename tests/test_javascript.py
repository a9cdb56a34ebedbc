'''
JavaScript emitter: precedence, statements, literal mode and the mode registry
'''

import unittest

from qjs_assembler import *

from deqjs.codegen import *
from deqjs.codegen import emitter as registry
from deqjs.common import DecompileWarning, WarningKind
from deqjs.ir import *
from deqjs.quickjs import FunctionInfo


a, b, c = Identifier('a'), Identifier('b'), Identifier('c')


def num(v) -> Literal:
    return Literal.number(v)


class TestExpressions(unittest.TestCase):

    def setUp(self):
        self.js = JavaScriptEmitter(indent = '  ')

    def render(self, node: Expression) -> str:
        return self.js.expr(node)

    def test_binary_precedence(self):
        self.assertEqual(self.render(BinaryOp('*', BinaryOp('+', a, b), c)), '(a + b) * c')
        self.assertEqual(self.render(BinaryOp('+', a, BinaryOp('*', b, c))), 'a + b * c')
        self.assertEqual(self.render(BinaryOp('-', BinaryOp('-', a, b), c)), 'a - b - c')
        self.assertEqual(self.render(BinaryOp('-', a, BinaryOp('-', b, c))), 'a - (b - c)')

    def test_exponent(self):
        '''** is right associative and rejects a bare unary left operand'''
        self.assertEqual(self.render(BinaryOp('**', a, BinaryOp('**', b, c))), 'a ** b ** c')
        self.assertEqual(self.render(BinaryOp('**', BinaryOp('**', a, b), c)), '(a ** b) ** c')
        self.assertEqual(self.render(BinaryOp('**', UnaryOp('-', a), b)), '(-a) ** b')

    def test_nullish_mixing(self):
        self.assertEqual(self.render(BinaryOp('??', BinaryOp('||', a, b), c)), '(a || b) ?? c')
        self.assertEqual(self.render(BinaryOp('&&', BinaryOp('??', a, b), c)), '(a ?? b) && c')
        self.assertEqual(self.render(BinaryOp('??', BinaryOp('??', a, b), c)), 'a ?? b ?? c')

    def test_unary(self):
        self.assertEqual(self.render(UnaryOp('-', UnaryOp('-', a))), '-(-a)')
        self.assertEqual(self.render(UnaryOp('!', BinaryOp('===', a, b))), '!(a === b)')
        self.assertEqual(self.render(UnaryOp('typeof', a)), 'typeof a')
        self.assertEqual(self.render(Update('++', a, False)), 'a++')
        self.assertEqual(self.render(Update('--', a, True)), '--a')

    def test_members_and_calls(self):
        self.assertEqual(self.render(MemberAccess.named(a, 'length')), 'a.length')
        self.assertEqual(self.render(MemberAccess.named(a, 'foo-bar')), 'a["foo-bar"]')
        self.assertEqual(self.render(MemberAccess(a, num(0), computed = True)), 'a[0]')
        self.assertEqual(self.render(MemberAccess.named(num(1), 'toString')), '(1).toString')
        self.assertEqual(self.render(Call(MemberAccess.named(a, 'push'), [b, c])), 'a.push(b, c)')
        self.assertEqual(self.render(New(Call(a, []), [])), 'new (a())()')
        self.assertEqual(self.render(Call(a, [Sequence([b, c])])), 'a((b, c))')

    def test_assignment_and_conditional(self):
        self.assertEqual(self.render(BinaryOp('+', Assignment(a, num(1)), b)), '(a = 1) + b')
        self.assertEqual(self.render(Assignment(a, b, '+=')), 'a += b')
        self.assertEqual(self.render(Conditional(a, b, c)), 'a ? b : c')
        self.assertEqual(self.render(BinaryOp('+', Conditional(a, b, c), num(1))), '(a ? b : c) + 1')

    def test_literals(self):
        self.assertEqual(self.render(Literal.string('say "hi"\n')), '"say \\"hi\\"\\n"')
        self.assertEqual(self.render(num(float('nan'))), 'NaN')
        self.assertEqual(self.render(num(-1.5)), '-1.5')
        self.assertEqual(self.render(BinaryOp('-', a, num(-1))), 'a - -1')
        self.assertEqual(self.render(Literal(LiteralKind.REGEXP, 'a+b', 'gi')), '/a+b/gi')
        self.assertEqual(self.render(FunctionRef(4)), '<function:4>')

    def test_object_literal(self):
        obj = ObjectLiteral([
            Property(Literal.string('a'), num(1)),
            Property(Literal.string('b-c'), num(2)),
            Property(Literal.string('v'), FunctionRef(3, 'getV'), PropertyKind.GETTER),
            Property(None, b, PropertyKind.SPREAD),
        ])
        self.assertEqual(self.render(obj), '{ a: 1, "b-c": 2, get v: getV, ...b }')
        self.assertEqual(self.render(ObjectLiteral()), '{}')


class TestStatements(unittest.TestCase):

    def setUp(self):
        self.js = JavaScriptEmitter(indent = '  ')

    def lines(self, stmt: Statement) -> str:
        return '\n'.join(self.js.statement_lines(stmt, 0))

    def test_else_if_chain(self):
        node = If(a, Block([ExpressionStatement(Call(b))]),
                  Block([If(c, Block([Return(num(1))]), Block([Return(num(2))]))]))
        self.assertEqual(self.lines(node), 'if (a) {\n  b();\n} else if (c) {\n  return 1;\n} else {\n  return 2;\n}')

    def test_loops(self):
        self.assertEqual(self.lines(DoWhile(Block([Break()]), a)), 'do {\n  break;\n} while (a);')

        loop = For(VariableDeclaration('let', Identifier('i'), num(0)), BinaryOp('<', Identifier('i'), a),
                   Update('++', Identifier('i'), False), Block([Continue('outer')]))
        self.assertEqual(self.lines(loop), 'for (let i = 0; i < a; i++) {\n  continue outer;\n}')

    def test_switch(self):
        node = Switch(a, [
            SwitchCase(num(1), [VariableDeclaration('let', Identifier('x'), b), Break()]),
            SwitchCase(None, [Return()]),
        ])
        self.assertEqual(self.lines(node),
                         'switch (a) {\n  case 1: {\n    let x = b;\n    break;\n  }\n  default:\n    return;\n}')

    def test_try_finally(self):
        node = Try(Block([ExpressionStatement(Call(a))]), None, None, Block([ExpressionStatement(Call(b))]))
        self.assertEqual(self.lines(node), 'try {\n  a();\n} finally {\n  b();\n}')

    def test_object_expression_statement(self):
        self.assertEqual(self.lines(ExpressionStatement(ObjectLiteral())), '({});')

    def test_goto_and_label(self):
        self.assertEqual(self.lines(Block([Goto('L12'), Label('L12')])), '{\n  goto L12;\n  L12:\n}')


class TestFunctions(unittest.TestCase):

    def function(self, **kwargs) -> FunctionIR:
        info = FunctionInfo(index = 2, arg_count = 1, has_prototype = True)
        param = Identifier('n', Slot(BindingKind.ARG, 0))
        body = Block([Return(BinaryOp('+', param, num(1)))])
        return FunctionIR(info, Scope(), 'inc', [param], body, **kwargs)

    def test_warnings_are_comments(self):
        fn = self.function(warnings = [DecompileWarning(WarningKind.STACK_MISMATCH, 'depth 2 vs 3')])
        text = JavaScriptEmitter(indent = '  ', optimize = True).emit_function(fn)
        self.assertEqual(text, 'function inc(n) {\n  // warning: depth 2 vs 3\n  return n + 1;\n}\n')

    def test_fallback(self):
        fn = self.function(fallback = True, error = 'invalid constant index 9', listing = ['00000 push_1'])
        text = JavaScriptEmitter(indent = '    ').emit_function(fn)
        self.assertEqual(text, '// Pseudo decompilation error: invalid constant index 9\n    00000 push_1\n')

    def test_literal_mode(self):
        fn = self.function()
        text = LiteralJavaScriptEmitter(indent = '  ').emit_function(fn)
        self.assertIn('  return (arg[0] + 1);', text)

        js = LiteralJavaScriptEmitter(indent = '  ')
        self.assertEqual(js.expr(Identifier('$s0', Slot(BindingKind.TEMP, 0))), '$s0')
        self.assertEqual(js.expr(Identifier('cb', Slot(BindingKind.VAR_REF, 2))), 'var_ref[2]')
        self.assertEqual(js.expr(Identifier('console')), 'console')

    def test_generate_javascript(self):
        self.assertEqual(generate_javascript(self.function(), indent = '  ', optimize = True),
                         'function inc(n) { return n + 1; }\n')


class TestModeRegistry(unittest.TestCase):

    def test_builtin_modes(self):
        self.assertEqual(available_modes(), ['disasm', 'literal', 'pseudo'])
        self.assertIsInstance(create_emitter('literal'), LiteralJavaScriptEmitter)
        self.assertIsInstance(create_emitter('disasm'), DisassemblyEmitter)

    def test_unknown_mode(self):
        with self.assertRaises(ValueError):
            create_emitter('typescript')

    def test_register_mode(self):
        class UpperEmitter(JavaScriptEmitter):
            def emit_function(self, fn):
                return super().emit_function(fn).upper()

        register_mode('upper', UpperEmitter)
        try:
            self.assertIsInstance(create_emitter('upper', indent = '  '), UpperEmitter)
        finally:
            registry._modes.pop('upper')


if __name__ == '__main__':
    unittest.main()
