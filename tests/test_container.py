'''
Container parser: reader primitives, atom tables, values and the function tree
'''

import math
import unittest

from qjs_assembler import *

from deqjs.common import FormatError, TruncatedInputError, UnsupportedTagError
from deqjs.quickjs import *


class TestBinaryReader(unittest.TestCase):

    def test_leb128(self):
        r = BinaryReader(leb128(0) + leb128(127) + leb128(128) + leb128(0xFFFFFFFF))
        self.assertEqual([r.read_leb128() for _ in range(4)], [0, 127, 128, 0xFFFFFFFF])
        self.assertTrue(r.at_end())

    def test_leb128_overflow(self):
        r = BinaryReader(bytes([0xFF, 0xFF, 0xFF, 0xFF, 0x7F]))
        with self.assertRaises(FormatError):
            r.read_leb128()

    def test_sleb128(self):
        r = BinaryReader(sleb128(-1) + sleb128(63) + sleb128(-64) + sleb128(-300) + sleb128(100000))
        self.assertEqual([r.read_sleb128() for _ in range(5)], [-1, 63, -64, -300, 100000])

    def test_strings(self):
        '''narrow strings are Latin-1, wide strings UTF-16 code units'''
        r = BinaryReader(qjs_string('héllo') + qjs_string('π r²'))
        self.assertEqual(r.read_string(), 'héllo')
        self.assertEqual(r.read_string(), 'π r²')

    def test_read_past_end(self):
        r = BinaryReader(b'\x01\x02')
        self.assertEqual(r.read_u16(), 0x0201)
        with self.assertRaises(TruncatedInputError):
            r.read_u8()

        # the position is left where the failed read started
        self.assertEqual(r.position, 2)

    def test_truncated_leb128(self):
        with self.assertRaises(TruncatedInputError):
            BinaryReader(b'\x80\x80').read_leb128()


class TestCurrentContainer(unittest.TestCase):

    def setUp(self):
        self.jsc = JscBuilder()

    def test_empty_input(self):
        with self.assertRaises(FormatError):
            parse_module(b'')

    def test_bad_version(self):
        with self.assertRaises(FormatError):
            parse_module(bytes([0x42, 0x00]))

    def test_single_function(self):
        data = script(self.jsc, [('push_1',), ('return',)])
        module = parse_module(data)

        self.assertEqual(module.version, FormatVersion.CURRENT)
        self.assertEqual(len(module.functions), 1)

        entry = module.entry
        self.assertEqual(entry.index, 0)
        self.assertIsNone(entry.parent)
        self.assertEqual(entry.display_name(), '<eval>')
        self.assertEqual(entry.bytecode, bytes([CURRENT_OPCODES.opcode('push_1'), CURRENT_OPCODES.opcode('return')]))
        self.assertTrue(entry.complete)

    def test_function_metadata(self):
        jsc = self.jsc
        fn = jsc.function('sum', args = ['a', 'b'], locals = [Var('total', LEXICAL), Var('k', CONST | LEXICAL)],
                          code = [('return_undef',)], strict = True, kind = KIND_ASYNC)
        module = parse_module(jsc.build(jsc.function('<eval>', cpool = [fn], code = [('return_undef',)])))

        func = module.functions[1]
        self.assertEqual(func.display_name(), 'sum')
        self.assertEqual(func.parent, 0)
        self.assertEqual((func.arg_count, func.var_count), (2, 2))
        self.assertTrue(func.is_strict)
        self.assertEqual(func.kind, FunctionKind.ASYNC)
        self.assertEqual([v.name.name for v in func.var_defs], ['a', 'b', 'total', 'k'])
        self.assertTrue(func.local_def(0).is_lexical)
        self.assertFalse(func.local_def(0).is_const)
        self.assertTrue(func.local_def(1).is_const)
        self.assertEqual(func.local_def(0).scope_next, -1)

    def test_arrow_function(self):
        jsc = self.jsc
        arrow = jsc.function('', code = [('return_undef',)], has_prototype = False)
        module = parse_module(jsc.build(jsc.function('<eval>', cpool = [arrow], code = [('return_undef',)])))

        self.assertTrue(module.functions[1].is_arrow)
        self.assertTrue(module.functions[1].is_anonymous)
        self.assertFalse(module.entry.is_arrow)

    def test_constant_pool_values(self):
        jsc = self.jsc
        cpool = [None, Undefined(), True, -7, 2.5, 'text', [1, 'two'], {'key': 3}]
        module = parse_module(script(jsc, [('return_undef',)], cpool = cpool))

        values = module.entry.cpool
        self.assertEqual([v.kind for v in values], [
            ValueKind.NULL, ValueKind.UNDEFINED, ValueKind.BOOL, ValueKind.INT32, ValueKind.FLOAT64,
            ValueKind.STRING, ValueKind.ARRAY, ValueKind.OBJECT,
        ])
        self.assertIs(values[2].value, True)
        self.assertEqual(values[3].value, -7)
        self.assertEqual(values[4].value, 2.5)
        self.assertEqual(values[5].value, 'text')
        self.assertEqual([v.value for v in values[6].items], [1, 'two'])

        name, value = values[7].props[0]
        self.assertEqual(name.name, 'key')
        self.assertEqual(value.value, 3)

    def test_flat_function_table(self):
        '''functions are numbered in pre-order and keep their parent index'''
        jsc = self.jsc
        inner = jsc.function('inner', code = [('return_undef',)])
        outer = jsc.function('outer', cpool = [inner], code = [('return_undef',)])
        other = jsc.function('other', code = [('return_undef',)])
        module = parse_module(jsc.build(jsc.function('<eval>', cpool = [outer, other], code = [('return_undef',)])))

        self.assertEqual([f.display_name() for f in module.functions], ['<eval>', 'outer', 'inner', 'other'])
        self.assertEqual([f.parent for f in module.functions], [None, 0, 1, 0])
        self.assertEqual(module.entry.cpool[0].function, 1)
        self.assertEqual(module.entry.cpool[1].function, 3)

    def test_truncated_atom_table(self):
        data = bytes([BC_VERSION]) + leb128(50) + b'\x01\x02'
        with self.assertRaises(TruncatedInputError) as ctx:
            parse_module(data)

        self.assertEqual(ctx.exception.partial.functions, [])

    def test_truncated_function_keeps_siblings(self):
        '''the partial module holds the functions parsed before the failure'''
        jsc = self.jsc
        first = jsc.function('first', code = [('return_undef',)])
        second = jsc.function('second', code = [('return_undef',)])
        data = jsc.build(jsc.function('<eval>', cpool = [first, second], code = [('push_1',), ('drop',), ('return_undef',)]))

        # the entry bytecode is serialized after its constant pool
        with self.assertRaises(TruncatedInputError) as ctx:
            parse_module(data[:-2])

        partial = ctx.exception.partial
        self.assertEqual([f.display_name() for f in partial.functions], ['<eval>', 'first', 'second'])
        self.assertFalse(partial.functions[0].complete)
        self.assertTrue(partial.functions[1].complete)
        self.assertTrue(partial.functions[2].complete)

    def test_unsupported_tag(self):
        data = bytes([BC_VERSION]) + leb128(0) + bytes([BCTag.MAP])
        with self.assertRaises(UnsupportedTagError):
            parse_module(data)

    def test_unknown_tag_is_kept(self):
        data = bytes([BC_VERSION]) + leb128(0) + bytes([0x60])
        module = parse_module(data)
        self.assertEqual(module.root.kind, ValueKind.UNSUPPORTED)
        self.assertEqual(module.functions, [])

    def test_symbol_and_raw_atoms(self):
        atoms = leb128(2) + bytes([0]) + (1234).to_bytes(4, 'little') + bytes([2]) + qjs_string('desc')
        module = parse_module(bytes([BC_VERSION]) + atoms + bytes([BCTag.NULL]))

        first = module.atoms.first_atom
        self.assertEqual(module.atoms.resolve(first).kind, AtomKind.RAW)
        self.assertEqual(module.atoms.resolve(first).value, 1234)
        self.assertEqual(module.atoms.resolve(first + 1).kind, AtomKind.SYMBOL)
        self.assertEqual(module.atoms.resolve(first + 1).text, 'desc')

    def test_atom_resolution(self):
        jsc = self.jsc
        module = parse_module(script(jsc, [('get_var', 'myGlobal'), ('return',)]))
        atoms = module.atoms

        self.assertTrue(atoms.resolve(0).is_null)
        self.assertEqual(atoms.resolve(jsc.atom('myGlobal')).name, 'myGlobal')
        self.assertEqual(atoms.resolve(jsc.atom('length')).kind, AtomKind.BUILTIN)
        self.assertEqual(atoms.resolve(ATOM_TAG_INT | 5).name, '5')

    def test_module_record(self):
        jsc = self.jsc
        root = jsc.function('main.js', locals = ['x', 'y'], code = [('return_undef',)])
        data = jsc.build_module(root, requests = ['./dep.js'], imports = [(0, 'x', 0)], exports = [(1, 'y')])
        module = parse_module(data)

        record = module.record
        self.assertEqual(str(record.name), 'main.js')
        self.assertEqual([str(r) for r in record.requests], ['./dep.js'])
        self.assertEqual(record.imports[0].var_index, 0)
        self.assertEqual(record.exports[0].local_index, 1)
        self.assertEqual(str(record.exports[0].export_name), 'y')
        self.assertFalse(record.has_tla)

        self.assertEqual(module.root.kind, ValueKind.MODULE)
        self.assertEqual(module.entry.display_name(), 'main.js')


class TestLegacyContainer(unittest.TestCase):

    def setUp(self):
        self.jsc = JscBuilder(legacy = True)

    def test_auto_detection(self):
        data = script(self.jsc, [('push_1',), ('return',)])
        self.assertEqual(detect_version(data), FormatVersion.LEGACY)
        self.assertEqual(parse_module(data).version, FormatVersion.LEGACY)
        self.assertEqual(detect_version(script(JscBuilder(), [('return_undef',)])), FormatVersion.CURRENT)

    def test_explicit_version(self):
        data = script(self.jsc, [('return_undef',)])
        self.assertEqual(parse_module(data, 'legacy').version, FormatVersion.LEGACY)

        with self.assertRaises(FormatError):
            parse_module(data, 'current')

    def test_functions_and_cpool(self):
        '''the legacy layout stores the bytecode before the constant pool'''
        jsc = self.jsc
        child = jsc.function('child', args = ['n'], code = [('get_arg0',), ('return',)])
        data = jsc.build(jsc.function('<eval>', cpool = [child, 'hello', 1.5], code = [('return_undef',)]))
        module = parse_module(data)

        self.assertEqual([f.display_name() for f in module.functions], ['<eval>', 'child'])
        child_info = module.functions[1]
        self.assertEqual(child_info.arg_count, 1)
        self.assertEqual(child_info.var_defs[0].name.name, 'n')
        self.assertEqual(child_info.bytecode, bytes([LEGACY_OPCODES.opcode('get_arg0'), LEGACY_OPCODES.opcode('return')]))

        self.assertEqual(module.entry.cpool[1].value, 'hello')
        self.assertTrue(math.isclose(module.entry.cpool[2].value, 1.5))

    def test_legacy_atoms(self):
        jsc = self.jsc
        module = parse_module(script(jsc, [('get_var', 'someName'), ('return',)]))
        self.assertIsInstance(module.atoms, LegacyAtomTable)
        self.assertEqual(module.atoms.resolve(jsc.atom('someName')).name, 'someName')

    def test_truncated_atom_table(self):
        with self.assertRaises(TruncatedInputError):
            parse_module(bytes([BC_VERSION_LEGACY]) + leb128(9) + b'\x00')


if __name__ == '__main__':
    unittest.main()
