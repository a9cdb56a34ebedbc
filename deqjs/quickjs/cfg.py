'''
Control flow graph construction over a decoded function
'''

from ..common import *
from .basic_block import BasicBlock
from .decoder import DecodedFunction
from .instruction import Instruction


class ControlFlowGraph:
    '''Basic blocks in offset order; blocks[0] is the entry'''

    def __init__(self, blocks: list[BasicBlock]):
        self.blocks = blocks
        self.by_offset = {b.start_offset: b for b in blocks}
        for i, b in enumerate(blocks):
            b.index = i

    @property
    def entry(self) -> BasicBlock | None:
        return self.blocks[0] if self.blocks else None

    def block_at(self, offset: int) -> BasicBlock | None:
        return self.by_offset.get(offset)

    def reachable_blocks(self) -> list[BasicBlock]:
        return [b for b in self.blocks if b.reachable]

    @property
    def unreachable(self) -> list[BasicBlock]:
        '''Blocks not reachable from the entry (kept, reported as warnings)'''
        return [b for b in self.blocks if not b.reachable]

    def __iter__(self):
        return iter(self.blocks)

    def __len__(self) -> int:
        return len(self.blocks)

    def __str__(self) -> str:
        return '\n\n'.join(str(b) for b in self.blocks)


def find_leaders(instructions: list[Instruction]) -> list[int]:
    '''
    Block start offsets: the first instruction, every jump target and every
    instruction following a block terminator (jump, branch, return, throw,
    catch, gosub, ret)
    '''
    if not instructions:
        return []

    valid = {inst.offset for inst in instructions}
    leaders = {instructions[0].offset}

    for inst in instructions:
        target = inst.target
        if target is not None and target in valid:
            leaders.add(target)

        if inst.descriptor.is_end_block() and inst.next_offset in valid:
            leaders.add(inst.next_offset)

    return sorted(leaders)


def build_cfg(decoded: DecodedFunction) -> ControlFlowGraph:
    instructions = decoded.instructions
    leaders = find_leaders(instructions)
    blocks = [BasicBlock(offset) for offset in leaders]
    by_offset = {b.start_offset: b for b in blocks}

    current = None
    for inst in instructions:
        current = by_offset.get(inst.offset, current)
        current.instructions.append(inst)

    for block in blocks:
        last = block.terminal
        for t in last.descriptor.get_branch_targets(last):
            succ = by_offset.get(t.offset)
            if succ is not None:
                block.add_branch(succ, t.kind)

    _mark_reachable(blocks)

    for b in blocks:
        if not b.reachable:
            decoded.warnings.append(DecompileWarning(
                WarningKind.UNREACHABLE_CODE,
                f'unreachable block {b.name} ({len(b.instructions)} instructions)',
                function    = decoded.function.display_name(),
                offset      = b.start_offset,
            ))

    return ControlFlowGraph(blocks)


def _mark_reachable(blocks: list[BasicBlock]):
    if not blocks:
        return

    for b in blocks:
        b.reachable = False

    stack = [blocks[0]]
    while stack:
        b = stack.pop()
        if b.reachable:
            continue
        b.reachable = True
        stack.extend(s for s in b.succs if not s.reachable)
