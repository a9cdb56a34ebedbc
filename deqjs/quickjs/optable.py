'''
Opcode metadata: operand formats, sizes and stack effects

Opcode numbers are positions in the table. Only the final (non temporary)
opcodes are listed, so the short forms follow `nop` directly.
'''

from dataclasses import dataclass

from ..common import *


class OpFormat(IntEnum2):
    NONE            = 0
    NONE_INT        = 1
    NONE_LOC        = 2
    NONE_ARG        = 3
    NONE_VAR_REF    = 4
    U8              = 5
    I8              = 6
    LOC8            = 7
    CONST8          = 8
    LABEL8          = 9
    U16             = 10
    I16             = 11
    LABEL16         = 12
    NPOP            = 13
    NPOPX           = 14
    NPOP_U16        = 15
    LOC             = 16
    ARG             = 17
    VAR_REF         = 18
    U32             = 19
    U32X2           = 20
    I32             = 21
    CONST           = 22
    LABEL           = 23
    ATOM            = 24
    ATOM_U8         = 25
    ATOM_U16        = 26
    ATOM_LABEL_U8   = 27
    ATOM_LABEL_U16  = 28
    LABEL_U16       = 29

    def __str__(self):
        return self.name.lower()


# operand encoded in the opcode itself
IMPLICIT_FORMATS = (
    OpFormat.NONE_INT,
    OpFormat.NONE_LOC,
    OpFormat.NONE_ARG,
    OpFormat.NONE_VAR_REF,
    OpFormat.NPOPX,
)

LABEL_FORMATS = (
    OpFormat.LABEL8,
    OpFormat.LABEL16,
    OpFormat.LABEL,
    OpFormat.LABEL_U16,
    OpFormat.ATOM_LABEL_U8,
    OpFormat.ATOM_LABEL_U16,
)


@dataclass(frozen = True)
class OpcodeInfo:
    opcode  : int
    name    : str
    size    : int
    n_pop   : int
    n_push  : int
    fmt     : OpFormat

    @property
    def has_label(self) -> bool:
        return self.fmt in LABEL_FORMATS

    def __str__(self) -> str:
        return self.name


UNKNOWN_OPCODE = OpcodeInfo(-1, 'unknown', 1, 0, 0, OpFormat.NONE)


def _op(name: str, size: int, n_pop: int, n_push: int, fmt: OpFormat) -> tuple:
    return (name, size, n_pop, n_push, fmt)


class OpcodeTable:
    '''Opcode number to OpcodeInfo mapping for one bytecode version'''

    def __init__(self, name: str, entries: list[tuple]):
        self.name = name
        self.infos = [OpcodeInfo(i, *entry) for i, entry in enumerate(entries)]
        self.by_name = {info.name: info for info in self.infos}

    def __len__(self) -> int:
        return len(self.infos)

    def info(self, opcode: int) -> OpcodeInfo | None:
        return self.infos[opcode] if 0 <= opcode < len(self.infos) else None

    def opcode(self, name: str) -> int:
        info = self.by_name.get(name)
        if info is None:
            raise ValueError(f'Unknown mnemonic: {name}')
        return info.opcode


CURRENT_OPCODES = OpcodeTable('current', [
    _op('invalid',                  1, 0, 0, OpFormat.NONE),
    _op('push_i32',                 5, 0, 1, OpFormat.I32),
    _op('push_const',               5, 0, 1, OpFormat.CONST),
    _op('fclosure',                 5, 0, 1, OpFormat.CONST),
    _op('push_atom_value',          5, 0, 1, OpFormat.ATOM),
    _op('private_symbol',           5, 0, 1, OpFormat.ATOM),
    _op('undefined',                1, 0, 1, OpFormat.NONE),
    _op('null',                     1, 0, 1, OpFormat.NONE),
    _op('push_this',                1, 0, 1, OpFormat.NONE),
    _op('push_false',               1, 0, 1, OpFormat.NONE),
    _op('push_true',                1, 0, 1, OpFormat.NONE),
    _op('object',                   1, 0, 1, OpFormat.NONE),
    _op('special_object',           2, 0, 1, OpFormat.U8),
    _op('rest',                     3, 0, 1, OpFormat.U16),
    _op('drop',                     1, 1, 0, OpFormat.NONE),
    _op('nip',                      1, 2, 1, OpFormat.NONE),
    _op('nip1',                     1, 3, 2, OpFormat.NONE),
    _op('dup',                      1, 1, 2, OpFormat.NONE),
    _op('dup1',                     1, 2, 3, OpFormat.NONE),
    _op('dup2',                     1, 2, 4, OpFormat.NONE),
    _op('dup3',                     1, 3, 6, OpFormat.NONE),
    _op('insert2',                  1, 2, 3, OpFormat.NONE),
    _op('insert3',                  1, 3, 4, OpFormat.NONE),
    _op('insert4',                  1, 4, 5, OpFormat.NONE),
    _op('perm3',                    1, 3, 3, OpFormat.NONE),
    _op('perm4',                    1, 4, 4, OpFormat.NONE),
    _op('perm5',                    1, 5, 5, OpFormat.NONE),
    _op('swap',                     1, 2, 2, OpFormat.NONE),
    _op('swap2',                    1, 4, 4, OpFormat.NONE),
    _op('rot3l',                    1, 3, 3, OpFormat.NONE),
    _op('rot3r',                    1, 3, 3, OpFormat.NONE),
    _op('rot4l',                    1, 4, 4, OpFormat.NONE),
    _op('rot5l',                    1, 5, 5, OpFormat.NONE),
    _op('call_constructor',         3, 2, 1, OpFormat.NPOP),
    _op('call',                     3, 1, 1, OpFormat.NPOP),
    _op('tail_call',                3, 1, 0, OpFormat.NPOP),
    _op('call_method',              3, 2, 1, OpFormat.NPOP),
    _op('tail_call_method',         3, 2, 0, OpFormat.NPOP),
    _op('array_from',               3, 0, 1, OpFormat.NPOP),
    _op('apply',                    3, 3, 1, OpFormat.U16),
    _op('return',                   1, 1, 0, OpFormat.NONE),
    _op('return_undef',             1, 0, 0, OpFormat.NONE),
    _op('check_ctor_return',        1, 1, 2, OpFormat.NONE),
    _op('check_ctor',               1, 0, 0, OpFormat.NONE),
    _op('check_brand',              1, 2, 2, OpFormat.NONE),
    _op('add_brand',                1, 2, 0, OpFormat.NONE),
    _op('return_async',             1, 1, 0, OpFormat.NONE),
    _op('throw',                    1, 1, 0, OpFormat.NONE),
    _op('throw_error',              6, 0, 0, OpFormat.ATOM_U8),
    _op('eval',                     5, 1, 1, OpFormat.NPOP_U16),
    _op('apply_eval',               3, 2, 1, OpFormat.U16),
    _op('regexp',                   1, 2, 1, OpFormat.NONE),
    _op('get_super',                1, 1, 1, OpFormat.NONE),
    _op('import',                   1, 2, 1, OpFormat.NONE),
    _op('check_var',                5, 0, 1, OpFormat.ATOM),
    _op('get_var_undef',            5, 0, 1, OpFormat.ATOM),
    _op('get_var',                  5, 0, 1, OpFormat.ATOM),
    _op('put_var',                  5, 1, 0, OpFormat.ATOM),
    _op('put_var_init',             5, 1, 0, OpFormat.ATOM),
    _op('put_var_strict',           5, 2, 0, OpFormat.ATOM),
    _op('get_ref_value',            1, 2, 3, OpFormat.NONE),
    _op('put_ref_value',            1, 3, 0, OpFormat.NONE),
    _op('define_var',               6, 0, 0, OpFormat.ATOM_U8),
    _op('check_define_var',         6, 0, 0, OpFormat.ATOM_U8),
    _op('define_func',              6, 1, 0, OpFormat.ATOM_U8),
    _op('get_field',                5, 1, 1, OpFormat.ATOM),
    _op('get_field2',               5, 1, 2, OpFormat.ATOM),
    _op('put_field',                5, 2, 0, OpFormat.ATOM),
    _op('get_private_field',        1, 2, 1, OpFormat.NONE),
    _op('put_private_field',        1, 3, 0, OpFormat.NONE),
    _op('define_private_field',     1, 3, 1, OpFormat.NONE),
    _op('get_array_el',             1, 2, 1, OpFormat.NONE),
    _op('get_array_el2',            1, 2, 2, OpFormat.NONE),
    _op('put_array_el',             1, 3, 0, OpFormat.NONE),
    _op('get_super_value',          1, 3, 1, OpFormat.NONE),
    _op('put_super_value',          1, 4, 0, OpFormat.NONE),
    _op('define_field',             5, 2, 1, OpFormat.ATOM),
    _op('set_name',                 5, 1, 1, OpFormat.ATOM),
    _op('set_name_computed',        1, 2, 2, OpFormat.NONE),
    _op('set_proto',                1, 2, 1, OpFormat.NONE),
    _op('set_home_object',          1, 2, 2, OpFormat.NONE),
    _op('define_array_el',          1, 3, 2, OpFormat.NONE),
    _op('append',                   1, 3, 2, OpFormat.NONE),
    _op('copy_data_properties',     2, 3, 3, OpFormat.U8),
    _op('define_method',            6, 2, 1, OpFormat.ATOM_U8),
    _op('define_method_computed',   2, 3, 1, OpFormat.U8),
    _op('define_class',             6, 2, 2, OpFormat.ATOM_U8),
    _op('define_class_computed',    6, 3, 3, OpFormat.ATOM_U8),
    _op('get_loc',                  3, 0, 1, OpFormat.LOC),
    _op('put_loc',                  3, 1, 0, OpFormat.LOC),
    _op('set_loc',                  3, 1, 1, OpFormat.LOC),
    _op('get_arg',                  3, 0, 1, OpFormat.ARG),
    _op('put_arg',                  3, 1, 0, OpFormat.ARG),
    _op('set_arg',                  3, 1, 1, OpFormat.ARG),
    _op('get_var_ref',              3, 0, 1, OpFormat.VAR_REF),
    _op('put_var_ref',              3, 1, 0, OpFormat.VAR_REF),
    _op('set_var_ref',              3, 1, 1, OpFormat.VAR_REF),
    _op('set_loc_uninitialized',    3, 0, 0, OpFormat.LOC),
    _op('get_loc_check',            3, 0, 1, OpFormat.LOC),
    _op('put_loc_check',            3, 1, 0, OpFormat.LOC),
    _op('put_loc_check_init',       3, 1, 0, OpFormat.LOC),
    _op('get_var_ref_check',        3, 0, 1, OpFormat.VAR_REF),
    _op('put_var_ref_check',        3, 1, 0, OpFormat.VAR_REF),
    _op('put_var_ref_check_init',   3, 1, 0, OpFormat.VAR_REF),
    _op('close_loc',                3, 0, 0, OpFormat.LOC),
    _op('if_false',                 5, 1, 0, OpFormat.LABEL),
    _op('if_true',                  5, 1, 0, OpFormat.LABEL),
    _op('goto',                     5, 0, 0, OpFormat.LABEL),
    _op('catch',                    5, 0, 1, OpFormat.LABEL),
    _op('gosub',                    5, 0, 0, OpFormat.LABEL),
    _op('ret',                      1, 1, 0, OpFormat.NONE),
    _op('nip_catch',                1, 2, 1, OpFormat.NONE),
    _op('to_object',                1, 1, 1, OpFormat.NONE),
    _op('to_propkey',               1, 1, 1, OpFormat.NONE),
    _op('to_propkey2',              1, 2, 2, OpFormat.NONE),
    _op('with_get_var',            10, 1, 0, OpFormat.ATOM_LABEL_U8),
    _op('with_put_var',            10, 2, 1, OpFormat.ATOM_LABEL_U8),
    _op('with_delete_var',         10, 1, 0, OpFormat.ATOM_LABEL_U8),
    _op('with_make_ref',           10, 1, 0, OpFormat.ATOM_LABEL_U8),
    _op('with_get_ref',            10, 1, 0, OpFormat.ATOM_LABEL_U8),
    _op('make_loc_ref',             7, 0, 2, OpFormat.ATOM_U16),
    _op('make_arg_ref',             7, 0, 2, OpFormat.ATOM_U16),
    _op('make_var_ref_ref',         7, 0, 2, OpFormat.ATOM_U16),
    _op('make_var_ref',             5, 0, 2, OpFormat.ATOM),
    _op('for_in_start',             1, 1, 1, OpFormat.NONE),
    _op('for_of_start',             1, 1, 3, OpFormat.NONE),
    _op('for_await_of_start',       1, 1, 3, OpFormat.NONE),
    _op('for_in_next',              1, 1, 3, OpFormat.NONE),
    _op('for_of_next',              2, 3, 5, OpFormat.U8),
    _op('iterator_check_object',    1, 1, 1, OpFormat.NONE),
    _op('iterator_get_value_done',  1, 1, 2, OpFormat.NONE),
    _op('iterator_close',           1, 3, 0, OpFormat.NONE),
    _op('iterator_next',            1, 4, 4, OpFormat.NONE),
    _op('iterator_call',            2, 4, 5, OpFormat.U8),
    _op('initial_yield',            1, 0, 0, OpFormat.NONE),
    _op('yield',                    1, 1, 2, OpFormat.NONE),
    _op('yield_star',               1, 1, 2, OpFormat.NONE),
    _op('async_yield_star',         1, 1, 2, OpFormat.NONE),
    _op('await',                    1, 1, 1, OpFormat.NONE),
    _op('neg',                      1, 1, 1, OpFormat.NONE),
    _op('plus',                     1, 1, 1, OpFormat.NONE),
    _op('dec',                      1, 1, 1, OpFormat.NONE),
    _op('inc',                      1, 1, 1, OpFormat.NONE),
    _op('post_dec',                 1, 1, 2, OpFormat.NONE),
    _op('post_inc',                 1, 1, 2, OpFormat.NONE),
    _op('dec_loc',                  2, 0, 0, OpFormat.LOC8),
    _op('inc_loc',                  2, 0, 0, OpFormat.LOC8),
    _op('add_loc',                  2, 1, 0, OpFormat.LOC8),
    _op('not',                      1, 1, 1, OpFormat.NONE),
    _op('lnot',                     1, 1, 1, OpFormat.NONE),
    _op('typeof',                   1, 1, 1, OpFormat.NONE),
    _op('delete',                   1, 2, 1, OpFormat.NONE),
    _op('delete_var',               5, 0, 1, OpFormat.ATOM),
    _op('mul',                      1, 2, 1, OpFormat.NONE),
    _op('div',                      1, 2, 1, OpFormat.NONE),
    _op('mod',                      1, 2, 1, OpFormat.NONE),
    _op('add',                      1, 2, 1, OpFormat.NONE),
    _op('sub',                      1, 2, 1, OpFormat.NONE),
    _op('pow',                      1, 2, 1, OpFormat.NONE),
    _op('shl',                      1, 2, 1, OpFormat.NONE),
    _op('sar',                      1, 2, 1, OpFormat.NONE),
    _op('shr',                      1, 2, 1, OpFormat.NONE),
    _op('lt',                       1, 2, 1, OpFormat.NONE),
    _op('lte',                      1, 2, 1, OpFormat.NONE),
    _op('gt',                       1, 2, 1, OpFormat.NONE),
    _op('gte',                      1, 2, 1, OpFormat.NONE),
    _op('instanceof',               1, 2, 1, OpFormat.NONE),
    _op('in',                       1, 2, 1, OpFormat.NONE),
    _op('eq',                       1, 2, 1, OpFormat.NONE),
    _op('neq',                      1, 2, 1, OpFormat.NONE),
    _op('strict_eq',                1, 2, 1, OpFormat.NONE),
    _op('strict_neq',               1, 2, 1, OpFormat.NONE),
    _op('and',                      1, 2, 1, OpFormat.NONE),
    _op('xor',                      1, 2, 1, OpFormat.NONE),
    _op('or',                       1, 2, 1, OpFormat.NONE),
    _op('is_undefined_or_null',     1, 1, 1, OpFormat.NONE),
    _op('private_in',               1, 2, 1, OpFormat.NONE),
    _op('nop',                      1, 0, 0, OpFormat.NONE),
    _op('push_minus1',              1, 0, 1, OpFormat.NONE_INT),
    _op('push_0',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_1',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_2',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_3',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_4',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_5',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_6',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_7',                   1, 0, 1, OpFormat.NONE_INT),
    _op('push_i8',                  2, 0, 1, OpFormat.I8),
    _op('push_i16',                 3, 0, 1, OpFormat.I16),
    _op('push_const8',              2, 0, 1, OpFormat.CONST8),
    _op('fclosure8',                2, 0, 1, OpFormat.CONST8),
    _op('push_empty_string',        1, 0, 1, OpFormat.NONE),
    _op('get_loc8',                 2, 0, 1, OpFormat.LOC8),
    _op('put_loc8',                 2, 1, 0, OpFormat.LOC8),
    _op('set_loc8',                 2, 1, 1, OpFormat.LOC8),
    _op('get_loc0_loc1',            1, 0, 2, OpFormat.NONE_LOC),
    _op('get_loc0',                 1, 0, 1, OpFormat.NONE_LOC),
    _op('get_loc1',                 1, 0, 1, OpFormat.NONE_LOC),
    _op('get_loc2',                 1, 0, 1, OpFormat.NONE_LOC),
    _op('get_loc3',                 1, 0, 1, OpFormat.NONE_LOC),
    _op('put_loc0',                 1, 1, 0, OpFormat.NONE_LOC),
    _op('put_loc1',                 1, 1, 0, OpFormat.NONE_LOC),
    _op('put_loc2',                 1, 1, 0, OpFormat.NONE_LOC),
    _op('put_loc3',                 1, 1, 0, OpFormat.NONE_LOC),
    _op('set_loc0',                 1, 1, 1, OpFormat.NONE_LOC),
    _op('set_loc1',                 1, 1, 1, OpFormat.NONE_LOC),
    _op('set_loc2',                 1, 1, 1, OpFormat.NONE_LOC),
    _op('set_loc3',                 1, 1, 1, OpFormat.NONE_LOC),
    _op('get_arg0',                 1, 0, 1, OpFormat.NONE_ARG),
    _op('get_arg1',                 1, 0, 1, OpFormat.NONE_ARG),
    _op('get_arg2',                 1, 0, 1, OpFormat.NONE_ARG),
    _op('get_arg3',                 1, 0, 1, OpFormat.NONE_ARG),
    _op('put_arg0',                 1, 1, 0, OpFormat.NONE_ARG),
    _op('put_arg1',                 1, 1, 0, OpFormat.NONE_ARG),
    _op('put_arg2',                 1, 1, 0, OpFormat.NONE_ARG),
    _op('put_arg3',                 1, 1, 0, OpFormat.NONE_ARG),
    _op('set_arg0',                 1, 1, 1, OpFormat.NONE_ARG),
    _op('set_arg1',                 1, 1, 1, OpFormat.NONE_ARG),
    _op('set_arg2',                 1, 1, 1, OpFormat.NONE_ARG),
    _op('set_arg3',                 1, 1, 1, OpFormat.NONE_ARG),
    _op('get_var_ref0',             1, 0, 1, OpFormat.NONE_VAR_REF),
    _op('get_var_ref1',             1, 0, 1, OpFormat.NONE_VAR_REF),
    _op('get_var_ref2',             1, 0, 1, OpFormat.NONE_VAR_REF),
    _op('get_var_ref3',             1, 0, 1, OpFormat.NONE_VAR_REF),
    _op('put_var_ref0',             1, 1, 0, OpFormat.NONE_VAR_REF),
    _op('put_var_ref1',             1, 1, 0, OpFormat.NONE_VAR_REF),
    _op('put_var_ref2',             1, 1, 0, OpFormat.NONE_VAR_REF),
    _op('put_var_ref3',             1, 1, 0, OpFormat.NONE_VAR_REF),
    _op('set_var_ref0',             1, 1, 1, OpFormat.NONE_VAR_REF),
    _op('set_var_ref1',             1, 1, 1, OpFormat.NONE_VAR_REF),
    _op('set_var_ref2',             1, 1, 1, OpFormat.NONE_VAR_REF),
    _op('set_var_ref3',             1, 1, 1, OpFormat.NONE_VAR_REF),
    _op('get_length',               1, 1, 1, OpFormat.NONE),
    _op('if_false8',                2, 1, 0, OpFormat.LABEL8),
    _op('if_true8',                 2, 1, 0, OpFormat.LABEL8),
    _op('goto8',                    2, 0, 0, OpFormat.LABEL8),
    _op('goto16',                   3, 0, 0, OpFormat.LABEL16),
    _op('call0',                    1, 1, 1, OpFormat.NPOPX),
    _op('call1',                    1, 1, 1, OpFormat.NPOPX),
    _op('call2',                    1, 1, 1, OpFormat.NPOPX),
    _op('call3',                    1, 1, 1, OpFormat.NPOPX),
    _op('is_undefined',             1, 1, 1, OpFormat.NONE),
    _op('is_null',                  1, 1, 1, OpFormat.NONE),
    _op('typeof_is_undefined',      1, 1, 1, OpFormat.NONE),
    _op('typeof_is_function',       1, 1, 1, OpFormat.NONE),
])
