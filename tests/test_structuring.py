'''
Lifting and control flow recovery, checked through the pseudo JavaScript output
'''

import unittest

from qjs_assembler import *

from deqjs import DecompileOptions, decompile
from deqjs.common import WarningKind, get_config
from deqjs.ir import *
from deqjs.ir.refine import refine
from deqjs.quickjs import *


def pseudo(**kwargs) -> DecompileOptions:
    return DecompileOptions(mode = kwargs.pop('mode', 'pseudo'), indent = '  ', **kwargs)


def decompile_one(fn: FunctionSpec, jsc: JscBuilder, **kwargs):
    '''Decompile `fn` as the only closure of an empty script; returns its DecompiledFunction'''
    data = jsc.build(jsc.function('<eval>', cpool = [fn], code = [('return_undef',)]))
    return decompile(data, pseudo(**kwargs)).functions[1]


class TestLifter(unittest.TestCase):

    def setUp(self):
        get_config().reset()

    def test_dropped_values_become_statements(self):
        jsc = JscBuilder()
        module = parse_module(script(jsc, [
            ('get_var', 'g'), ('call0',), ('drop',),
            ('get_var', 'h'), ('call0',), ('drop',),
            ('push_1',), ('drop',),
            ('return_undef',),
        ]))
        func = module.entry
        decoded = decode_function(func, module)
        lifted = lift_function(module, decoded, build_cfg(decoded), Scope.from_function(func))

        stmts = lifted.entry.statements
        self.assertEqual(len([s for s in stmts if isinstance(s, ExpressionStatement)]), 3)
        self.assertIsInstance(stmts[0].expr, Call)
        self.assertEqual(stmts[0].expr.callee.name, 'g')
        self.assertEqual(lifted.entry.terminator, TerminatorKind.RETURN)

    def test_local_store(self):
        jsc = JscBuilder()
        fn = jsc.function('f', args = ['a'], locals = ['x'], code = [
            ('get_arg0',), ('push_2',), ('mul',), ('put_loc0',),
            ('get_loc0',), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertIn('function f(a) {', text)
        self.assertIn('x = a * 2;', text)
        self.assertIn('return x;', text)

    def test_method_call(self):
        jsc = JscBuilder()
        fn = jsc.function('log', args = ['msg'], code = [
            ('get_var', 'console'), ('get_field2', 'log'), ('get_arg0',), ('call_method', 1), ('drop',),
            ('return_undef',),
        ])
        self.assertIn('console.log(msg);', decompile_one(fn, jsc).text)

    def assertBefore(self, text: str, *parts: str):
        positions = [text.index(part) for part in parts]
        self.assertEqual(positions, sorted(positions), text)

    def test_swap_keeps_old_values(self):
        '''both values are read before either store'''
        jsc = JscBuilder()
        fn = jsc.function('f', args = ['a'], locals = ['x'], code = [
            ('get_arg0',), ('get_loc0',), ('put_arg0',), ('put_loc0',),
            ('get_loc0',), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, '$s0 = a;', 'a = x;', 'x = $s0;', 'return x;')

    def test_store_after_read(self):
        jsc = JscBuilder()
        fn = jsc.function('f', locals = ['x'], code = [
            ('get_loc0',), ('push_1',), ('put_loc0',), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, '$s0 = x;', 'x = 1;', 'return $s0;')

    def test_increment_after_read(self):
        jsc = JscBuilder()
        fn = jsc.function('f', locals = ['x'], code = [
            ('get_loc0',), ('inc_loc', 0), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, '$s0 = x;', 'x++;', 'return $s0;')

    def test_field_store_after_read(self):
        jsc = JscBuilder()
        fn = jsc.function('f', args = ['o'], code = [
            ('get_arg0',), ('get_field', 'p'),
            ('get_arg0',), ('push_1',), ('put_field', 'p'),
            ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, '$s0 = o.p;', 'o.p = 1;', 'return $s0;')

    def test_global_read_before_call(self):
        jsc = JscBuilder()
        fn = jsc.function('f', args = ['a'], code = [
            ('get_var', 'x'),
            ('get_var', 'h'), ('call0',), ('drop',),
            ('get_arg0',), ('add',), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, '$s0 = x;', 'h();', 'return $s0 + a;')

    def test_postfix_increment_needs_no_temporary(self):
        jsc = JscBuilder()
        fn = jsc.function('f', locals = ['x', 'y'], code = [
            ('get_loc0',), ('post_inc',), ('put_loc0',), ('put_loc1',),
            ('get_loc1',), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertIn('y = x++;', text)
        self.assertNotIn('$s', text)

    def test_local_read_survives_call(self):
        '''a call cannot change a local nothing captures'''
        jsc = JscBuilder()
        fn = jsc.function('f', args = ['a'], code = [
            ('get_arg0',),
            ('get_var', 'h'), ('call0',), ('drop',),
            ('push_1',), ('add',), ('return',),
        ])
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, 'h();', 'return a + 1;')
        self.assertNotIn('$s', text)

    def test_read_across_branches_before_call(self):
        '''the value pushed before the branch is read after the calls in both arms'''
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
        text = decompile_one(fn, jsc).text

        self.assertBefore(text, '$s0 = x;', 'if (a) {', 'h();', '$s1 = 1;', 'k();', '$s1 = 2;', 'return $s0 + $s1;')


class TestStructuring(unittest.TestCase):

    def setUp(self):
        get_config().reset()
        self.jsc = JscBuilder()

    def test_if_else(self):
        fn = self.jsc.function('f', args = ['a'], code = [
            ('get_arg0',),
            ('if_false', 'else'),
            ('get_var', 'g'), ('push_1',), ('call1',), ('drop',),
            ('goto', 'end'),
            'else',
            ('get_var', 'g'), ('push_2',), ('call1',), ('drop',),
            'end',
            ('push_0',),
            ('return',),
        ])
        text = decompile_one(fn, self.jsc).text

        self.assertIn('  if (a) {\n    g(1);\n  } else {\n    g(2);\n  }\n', text)
        self.assertIn('  return 0;\n', text)
        self.assertNotIn('goto', text)

    def test_for_loop(self):
        '''counting loop over a block scoped local'''
        fn = self.jsc.function('f', locals = [Var('i', LEXICAL)], code = [
            ('push_0',), ('put_loc0',),
            'head',
            ('get_loc0',), ('push_i8', 10), ('lt',),
            ('if_false', 'exit'),
            ('get_var', 'g'), ('get_loc0',), ('call1',), ('drop',),
            ('inc_loc', 0),
            ('goto', 'head'),
            'exit',
            ('return_undef',),
        ])
        text = decompile_one(fn, self.jsc).text

        self.assertIn('for (let i = 0; i < 10; i++) {', text)
        self.assertIn('    g(i);', text)

    def test_switch_from_guards(self):
        code = []
        for i, (key, value) in enumerate(((1, 10), (2, 20), (3, 30))):
            code += [
                ('get_arg0',), (f'push_{key}',), ('strict_eq',),
                ('if_false', f'next{i}'),
                ('push_i8', value), ('return',),
                f'next{i}',
            ]
        code += [('push_0',), ('return',)]
        text = decompile_one(self.jsc.function('pick', args = ['x'], code = code), self.jsc).text

        self.assertIn('switch (x) {', text)
        self.assertIn('case 1:', text)
        self.assertIn('case 3:', text)
        self.assertIn('return 10;', text)
        self.assertNotIn('if (x === 2)', text)

    def test_ternary(self):
        fn = self.jsc.function('f', args = ['a'], code = [
            ('get_arg0',),
            ('if_false', 'else'),
            ('push_1',),
            ('goto', 'end'),
            'else',
            ('push_2',),
            'end',
            ('return',),
        ])
        self.assertIn('return a ? 1 : 2;', decompile_one(fn, self.jsc).text)

    def test_logical_and(self):
        fn = self.jsc.function('f', args = ['a', 'b'], code = [
            ('get_arg0',),
            ('dup',),
            ('if_false', 'end'),
            ('drop',),
            ('get_arg1',),
            'end',
            ('return',),
        ])
        self.assertIn('return a && b;', decompile_one(fn, self.jsc).text)

    def test_try_catch(self):
        fn = self.jsc.function('f', locals = ['e'], code = [
            ('catch', 'handler'),
            ('get_var', 'g'), ('call0',), ('drop',),
            ('drop',),
            ('goto', 'end'),
            'handler',
            ('put_loc0',),
            ('get_var', 'h'), ('get_loc0',), ('call1',), ('drop',),
            'end',
            ('return_undef',),
        ])
        text = decompile_one(fn, self.jsc).text

        self.assertIn('  try {\n    g();\n  } catch (e) {\n    h(e);\n  }', text)

    def test_refine_is_idempotent(self):
        jsc = self.jsc
        fn = jsc.function('f', args = ['a'], locals = [Var('i', LEXICAL)], code = [
            ('push_0',), ('put_loc0',),
            'head',
            ('get_loc0',), ('get_arg0',), ('lt',),
            ('if_false', 'exit'),
            ('get_loc0',), ('push_3',), ('strict_eq',),
            ('if_false', 'skip'),
            ('get_var', 'g'), ('call0',), ('drop',),
            'skip',
            ('inc_loc', 0),
            ('goto', 'head'),
            'exit',
            ('return_undef',),
        ])
        module = parse_module(jsc.build(jsc.function('<eval>', cpool = [fn], code = [('return_undef',)])))
        func = module.functions[1]
        decoded = decode_function(func, module)
        lifted = lift_function(module, decoded, build_cfg(decoded), Scope.from_function(func))
        body = structure_function(lifted, module.atoms)

        self.assertEqual(refine(body), body)


class TestDiagnostics(unittest.TestCase):

    def setUp(self):
        get_config().reset()

    def test_unknown_opcode_is_local(self):
        '''an unknown opcode becomes a comment; sibling functions are untouched'''
        jsc = JscBuilder()
        raw = jsc.assemble([('get_var', 'g'), ('call0',), ('drop',)]) + b'\xfe' + jsc.assemble([('return_undef',)])
        broken = jsc.function('broken', raw_code = raw)
        clean = jsc.function('clean', args = ['a'], code = [('get_arg0',), ('return',)])
        data = jsc.build(jsc.function('<eval>', cpool = [broken, clean], code = [('return_undef',)]))

        result = decompile(data, pseudo())
        broken_out, clean_out = result.functions[1], result.functions[2]

        self.assertIn('  // warning: unknown opcode 0xfe', broken_out.text)
        self.assertIn('// unknown opcode 0xfe at 7', broken_out.text)
        self.assertIn('g();', broken_out.text)
        self.assertFalse(broken_out.fallback)

        self.assertEqual(clean_out.warnings, [])
        self.assertIn('return a;', clean_out.text)

    def test_fallback_listing(self):
        '''a function that cannot be lifted is emitted as its raw listing'''
        jsc = JscBuilder()
        bad = jsc.function('bad', code = [('push_const', 7), ('return',)])
        good = jsc.function('good', code = [('push_1',), ('return',)])
        data = jsc.build(jsc.function('<eval>', cpool = [bad, good], code = [('return_undef',)]))

        result = decompile(data, pseudo())
        bad_out = result.functions[1]

        self.assertTrue(bad_out.fallback)
        self.assertTrue(bad_out.text.startswith('// Pseudo decompilation error: invalid constant index 7'))
        self.assertIn('\n  00000 push_const', bad_out.text)
        self.assertEqual(bad_out.warnings[-1].kind, WarningKind.INVALID_REFERENCE)

        self.assertFalse(result.functions[2].fallback)
        self.assertIn('return 1;', result.functions[2].text)

    def test_unreachable_code_comment(self):
        jsc = JscBuilder()
        fn = jsc.function('f', code = [('push_1',), ('return',), ('push_2',), ('return',)])
        out = decompile_one(fn, jsc)

        self.assertIn('// unreachable code at L2:', out.text)
        self.assertIn(WarningKind.UNREACHABLE_CODE, [w.kind for w in out.warnings])


class TestOutputModes(unittest.TestCase):

    def setUp(self):
        get_config().reset()
        self.jsc = JscBuilder()
        self.fn = self.jsc.function('inc', args = ['a'], code = [('get_arg0',), ('push_1',), ('add',), ('return',)])

    def test_single_return_one_liner(self):
        out = decompile_one(self.fn, self.jsc, optimize = True)
        self.assertEqual(out.text, 'function inc(a) { return a + 1; }\n')

    def test_multi_line_without_optimize(self):
        out = decompile_one(self.fn, self.jsc)
        self.assertEqual(out.text, 'function inc(a) {\n  return a + 1;\n}\n')

    def test_literal_mode(self):
        out = decompile_one(self.fn, self.jsc, mode = 'literal')
        self.assertIn('return (arg[0] + 1);', out.text)

    def test_arrow_header(self):
        arrow = self.jsc.function('twice', args = ['n'], has_prototype = False,
                                  code = [('get_arg0',), ('push_2',), ('mul',), ('return',)])
        out = decompile_one(arrow, self.jsc)
        self.assertTrue(out.text.startswith('const twice = (n) => {'))

    def test_async_header(self):
        fn = self.jsc.function('load', kind = KIND_ASYNC, code = [('return_undef',)])
        self.assertTrue(decompile_one(fn, self.jsc).text.startswith('async function load() {'))

    def test_program_text(self):
        data = self.jsc.build(self.jsc.function('<eval>', cpool = [self.fn], code = [('return_undef',)]))
        result = decompile(data, pseudo())

        self.assertIn('function <eval>() {', result.text)
        self.assertIn('function inc(a) {', result.text)
        self.assertLess(result.text.index('<eval>'), result.text.index('inc'))


if __name__ == '__main__':
    unittest.main()
