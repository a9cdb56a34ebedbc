'''
Decoder, control flow graph and instruction listing
'''

import struct
import unittest

from qjs_assembler import *

from deqjs import DecompileOptions, decompile
from deqjs.common import InvalidReferenceError, WarningKind, get_config
from deqjs.quickjs import *


def decoded(jsc: JscBuilder, code = (), raw_code: bytes | None = None, locals = (), validate: bool = False):
    fn = jsc.function('<eval>', locals = locals, code = code, raw_code = raw_code)
    module = parse_module(jsc.build(fn))
    return module, decode_function(module.entry, module, validate = validate)


class TestDecoder(unittest.TestCase):

    def setUp(self):
        self.jsc = JscBuilder()

    def test_implicit_operands(self):
        '''short forms carry their operand in the opcode'''
        _, dec = decoded(self.jsc, [('get_loc0',), ('push_3',), ('push_minus1',), ('call1',), ('return',)], locals = ['x'])
        get_loc0, push_3, push_minus1, call1, _ = dec.instructions

        self.assertEqual(get_loc0.var_index, 0)
        self.assertTrue(get_loc0.operands[0].implicit)
        self.assertEqual(push_3.imm, 3)
        self.assertEqual(push_minus1.imm, -1)
        self.assertEqual(call1.argc, 1)
        self.assertEqual([i.offset for i in dec.instructions], [0, 1, 2, 3, 4])

    def test_label_targets(self):
        _, dec = decoded(self.jsc, [
            'top',
            ('push_1',),
            ('if_false', 'end'),
            ('goto', 'top'),
            'end',
            ('return_undef',),
        ])
        _, if_false, goto, ret = dec.instructions

        self.assertEqual(if_false.target, 11)
        self.assertEqual(if_false.operand(OperandKind.LABEL).raw, 9)
        self.assertEqual(goto.target, 0)
        self.assertEqual(goto.operand(OperandKind.LABEL).raw, -7)
        self.assertEqual(ret.offset, 11)

    def test_atom_label_target(self):
        '''with_* labels are relative to the end of the atom operand'''
        _, dec = decoded(self.jsc, [('with_get_var', 'obj', 'end', 0), 'end', ('return_undef',)])
        inst = dec.instructions[0]

        self.assertEqual(inst.target, 10)
        self.assertEqual(inst.operand(OperandKind.LABEL).raw, 5)
        self.assertEqual(inst.atom, self.jsc.atom('obj'))

    def test_unknown_opcode(self):
        jsc = self.jsc
        raw = jsc.assemble([('push_1',)]) + b'\xfe' + jsc.assemble([('return',)])
        _, dec = decoded(jsc, raw_code = raw)

        self.assertEqual([i.mnemonic for i in dec.instructions], ['push_1', 'unknown', 'return'])
        unknown = dec.instructions[1]
        self.assertTrue(unknown.is_unknown)
        self.assertEqual(unknown.size, 1)
        self.assertEqual(unknown.opcode, 0xfe)

        self.assertEqual(len(dec.warnings), 1)
        self.assertEqual(dec.warnings[0].kind, WarningKind.UNKNOWN_OPCODE)
        self.assertIn('unknown opcode 0xfe', dec.warnings[0].message)
        self.assertEqual(dec.warnings[0].offset, 1)

    def test_truncated_operand(self):
        '''an operand running past the end consumes the rest of the stream'''
        jsc = self.jsc
        get_var = CURRENT_OPCODES.opcode('get_var')
        raw = jsc.assemble([('push_1',)]) + bytes([get_var, 0x01, 0x00])
        _, dec = decoded(jsc, raw_code = raw)

        self.assertEqual(len(dec.instructions), 2)
        last = dec.instructions[1]
        self.assertTrue(last.is_unknown)
        self.assertEqual((last.offset, last.size), (1, 3))
        self.assertIn('truncated', dec.warnings[0].message)

    def test_validate_constant_index(self):
        module, dec = decoded(self.jsc, [('push_const', 3), ('return',)])
        self.assertEqual(dec.instructions[0].const_index, 3)

        with self.assertRaises(InvalidReferenceError) as ctx:
            decode_function(module.entry, module)

        self.assertEqual(ctx.exception.index, 3)
        self.assertEqual(ctx.exception.offset, 0)

    def test_validate_local_and_jump(self):
        jsc = self.jsc
        module = parse_module(script(jsc, [('get_loc', 5), ('return',)], locals = ['a']))
        with self.assertRaises(InvalidReferenceError):
            decode_function(module.entry, module)

        goto = CURRENT_OPCODES.opcode('goto')
        module = parse_module(jsc.build(jsc.function('<eval>', raw_code = bytes([goto]) + struct.pack('<i', 100))))
        with self.assertRaises(InvalidReferenceError) as ctx:
            decode_function(module.entry, module)
        self.assertEqual(ctx.exception.kind, 'jump target')

    def test_legacy_table(self):
        jsc = JscBuilder(legacy = True)
        module = parse_module(script(jsc, [('push_i8', -5), ('get_var', 'print'), ('return',)]))
        dec = decode_function(module.entry, module)

        self.assertEqual([i.mnemonic for i in dec.instructions], ['push_i8', 'get_var', 'return'])
        self.assertEqual(dec.instructions[0].imm, -5)
        self.assertEqual(module.atoms.resolve(dec.instructions[1].atom).name, 'print')


class TestControlFlowGraph(unittest.TestCase):

    def test_branch_edges(self):
        '''if_false falls through on TRUE and jumps on FALSE'''
        _, dec = decoded(JscBuilder(), [
            'top',
            ('push_1',),
            ('if_false', 'end'),
            ('goto', 'top'),
            'end',
            ('return_undef',),
        ])
        cfg = build_cfg(dec)

        self.assertEqual([b.start_offset for b in cfg], [0, 6, 11])
        head, back, exit = cfg.blocks
        self.assertIs(head.true_succ, back)
        self.assertIs(head.false_succ, exit)
        self.assertEqual(back.succs, [head])
        self.assertEqual(exit.succs, [])
        self.assertEqual(cfg.unreachable, [])

    def test_catch_edge(self):
        _, dec = decoded(JscBuilder(), [
            ('catch', 'handler'),
            ('drop',),
            ('goto', 'end'),
            'handler',
            ('drop',),
            'end',
            ('return_undef',),
        ])
        cfg = build_cfg(dec)

        entry = cfg.entry
        handler = cfg.block_at(11)
        self.assertIs(entry.succ(BranchKind.EXCEPTION), handler)
        self.assertIs(entry.succ(BranchKind.UNCONDITIONAL), cfg.block_at(5))

    def test_unreachable_block(self):
        _, dec = decoded(JscBuilder(), [('return_undef',), ('push_1',), ('return',)])
        cfg = build_cfg(dec)

        self.assertEqual([b.start_offset for b in cfg.unreachable], [1])
        self.assertEqual(dec.warnings[-1].kind, WarningKind.UNREACHABLE_CODE)


class TestListing(unittest.TestCase):

    def test_listing_lines(self):
        jsc = JscBuilder()
        module, dec = decoded(jsc, [
            ('get_var', 'myGlobal'),
            ('if_false', 'end'),
            ('get_loc0',),
            ('drop',),
            'end',
            ('return_undef',),
        ], locals = ['x'])
        atom_id = jsc.atom('myGlobal')
        lines = raw_listing(dec.instructions, module.atoms)

        self.assertEqual(lines[0], f'00000 {"get_var":<18}       {atom_id} ; myGlobal')
        self.assertEqual(lines[1], f'00005 {"if_false":<18}       6 ; -> 00012')
        self.assertEqual(lines[2], f'00010 {"get_loc0":<18}       <fmt:none_loc>')
        self.assertEqual(lines[3].rstrip(), '00011 drop')

    def test_unknown_line(self):
        jsc = JscBuilder()
        module, dec = decoded(jsc, raw_code = b'\xfe')
        self.assertEqual(format_instruction(dec.instructions[0], module.atoms), f'00000 {"unknown":<18}       0xfe')


class TestDisasmMode(unittest.TestCase):

    def setUp(self):
        get_config().reset()

    def test_function_header(self):
        jsc = JscBuilder()
        add = jsc.function('add', args = ['a', 'b'], code = [('get_arg0',), ('get_arg1',), ('add',), ('return',)],
                           strict = True)
        data = jsc.build(jsc.function('<eval>', cpool = [add], code = [('return_undef',)]))

        result = decompile(data, DecompileOptions(mode = 'disasm', indent = '  '))
        text = result.text

        self.assertIn('function <eval> (args=0, vars=0, strict=false)\nbytecode:\n00000 return_undef', text)
        self.assertIn('function add (args=2, vars=0, strict=true)\nbytecode:\n', text)
        self.assertIn(f'00000 {"get_arg0":<18}       <fmt:none_arg>', text)
        self.assertIn('00002 add', text)
        self.assertEqual(result.warnings, [])

    def test_unknown_opcode_warning(self):
        jsc = JscBuilder()
        raw = jsc.assemble([('push_1',)]) + b'\xfe' + jsc.assemble([('return',)])
        data = jsc.build(jsc.function('<eval>', raw_code = raw))

        result = decompile(data, DecompileOptions(mode = 'disasm', indent = '  '))
        self.assertIn('00001 unknown', result.text)
        self.assertEqual([w.kind for w in result.warnings], [WarningKind.UNKNOWN_OPCODE])
        self.assertEqual(result.warnings[0].function, '<eval>')


if __name__ == '__main__':
    unittest.main()
