"""
Basic Block representation
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..common import *

if TYPE_CHECKING:
    from .instruction import Instruction


class BranchKind(IntEnum2):
    """Type of control flow edge"""
    UNCONDITIONAL   = 0     # goto, fallthrough
    TRUE            = 1     # taken when the condition is truthy
    FALSE           = 2     # taken when the condition is falsy
    EXCEPTION       = 3     # catch handler
    FINALLY         = 4     # gosub target


@dataclass(eq = False)
class BasicBlock:
    """Basic block in control flow graph"""
    start_offset    : int                                                       # Starting offset
    name            : str                               = ''                    # Block label (e.g., 'L12')
    instructions    : list['Instruction']               = field(default_factory = list)
    succs           : list['BasicBlock']                = field(default_factory = list)
    preds           : list['BasicBlock']                = field(default_factory = list)
    edges           : list[tuple[BranchKind, 'BasicBlock']] = field(default_factory = list)
    index           : int                               = -1
    reachable       : bool                              = True

    def __post_init__(self):
        if not self.name:
            self.name = f'L{self.start_offset}'

    @property
    def offset(self) -> int:
        return self.start_offset

    @property
    def end_offset(self) -> int:
        """End offset (exclusive)"""
        if self.instructions:
            return self.instructions[-1].next_offset
        return self.start_offset

    @property
    def terminal(self) -> 'Instruction | None':
        """Terminal instruction (last instruction in block)"""
        return self.instructions[-1] if self.instructions else None

    def succ(self, kind: BranchKind) -> 'BasicBlock | None':
        for k, block in self.edges:
            if k == kind:
                return block
        return None

    @property
    def true_succ(self) -> 'BasicBlock | None':
        return self.succ(BranchKind.TRUE)

    @property
    def false_succ(self) -> 'BasicBlock | None':
        return self.succ(BranchKind.FALSE)

    def add_branch(self, target: 'BasicBlock', kind: BranchKind = BranchKind.UNCONDITIONAL) -> 'BasicBlock':
        """Add a branch to target block (maintains bidirectional edges)"""
        self.edges.append((kind, target))

        if target not in self.succs:
            self.succs.append(target)

        if self not in target.preds:
            target.preds.append(self)

        return target

    def __str__(self) -> str:
        indent = default_indent()
        lines = [f'BasicBlock {self.name} @ {self.start_offset}']
        for inst in self.instructions:
            lines.append(f'{indent}{inst.offset:05}: {inst}')

        if self.edges:
            lines.append(f'{indent}-> ' + ', '.join(f'{b.name}({k})' for k, b in self.edges))

        return '\n'.join(lines)
