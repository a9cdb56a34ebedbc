'''
Dominance and loop analysis for control flow recovery

Blocks are numbered 0..n-1 with 0 the entry. Post-dominators are computed
against a virtual exit joined to every block without successors; blocks that
cannot reach it (infinite loops, finally bodies ending in `ret`) have no
immediate post-dominator.

Based on:
- Cooper, Harvey, Kennedy (2001): A Simple, Fast Dominance Algorithm
- Cifuentes (1994): Reverse Compilation Techniques
'''

from dataclasses import dataclass, field


@dataclass
class LoopInfo:
    '''Natural loop: the union of the bodies of all back edges to one header'''
    header      : int
    body        : set[int]
    back_edges  : list[tuple[int, int]]
    exits       : set[int] = field(default_factory = set)

    @property
    def latches(self) -> list[int]:
        return [src for src, _ in self.back_edges]


class StructuralAnalyzer:
    '''
    1. Dominators over the forward graph (back edge detection)
    2. Post-dominators over the reversed graph (merge points)
    3. Natural loops from back edges (successor dominates predecessor)
    '''

    def __init__(self, num_blocks: int, successors: dict[int, list[int]],
                 flow_successors: dict[int, list[int]] | None = None):
        self.num_blocks = num_blocks
        self.successors = self._clip(successors)
        self.predecessors = self._build_predecessors(self.successors)

        # post-dominance ignores edges into subroutines (gosub targets)
        self.flow_successors = self._clip(flow_successors) if flow_successors is not None else self.successors
        self.flow_predecessors = self._build_predecessors(self.flow_successors)

        self.dom: dict[int, set[int]] = {}
        self.idom: dict[int, int | None] = {}
        self.pdom: dict[int, set[int] | None] = {}
        self.ipdom: dict[int, int | None] = {}

        self.loops: dict[int, LoopInfo] = {}
        self.back_edges: set[tuple[int, int]] = set()

        if num_blocks:
            self._compute_dominators()
            self._compute_post_dominators()
            self._identify_loops()

    def _clip(self, successors: dict[int, list[int]]) -> dict[int, list[int]]:
        return {i: [s for s in successors.get(i, []) if s < self.num_blocks] for i in range(self.num_blocks)}

    def _build_predecessors(self, successors: dict[int, list[int]]) -> dict[int, list[int]]:
        preds = {i: [] for i in range(self.num_blocks)}
        for src, succs in successors.items():
            for dst in succs:
                if src not in preds[dst]:
                    preds[dst].append(src)
        return preds

    def _reachable(self) -> set[int]:
        seen = {0}
        stack = [0]
        while stack:
            for s in self.successors[stack.pop()]:
                if s not in seen:
                    seen.add(s)
                    stack.append(s)
        return seen

    # ------------------------------------------------------------ dominators --
    def _compute_dominators(self):
        '''Iterative dataflow: dom(n) = {n} | intersection of dom(p)'''
        nodes = self._reachable()
        dom = {i: set(nodes) for i in nodes}
        dom[0] = {0}

        changed = True
        while changed:
            changed = False
            for node in sorted(nodes):
                if node == 0:
                    continue

                preds = [p for p in self.predecessors[node] if p in nodes]
                new_dom = set(nodes)
                for pred in preds:
                    new_dom &= dom[pred]
                new_dom.add(node)

                if new_dom != dom[node]:
                    dom[node] = new_dom
                    changed = True

        self.dom = dom
        self.idom = {n: self._closest(n, dom) for n in nodes}

    @staticmethod
    def _closest(node: int, sets: dict[int, set[int] | None]) -> int | None:
        '''The strict (post)dominator that every other strict one (post)dominates'''
        own = sets.get(node)
        if not own:
            return None

        strict = own - {node}
        for candidate in strict:
            if all(other == candidate or candidate in (sets.get(other) or ()) for other in strict):
                return candidate
        return None

    def dominates(self, a: int, b: int) -> bool:
        return a in self.dom.get(b, ())

    # ------------------------------------------------------- post-dominators --
    def _compute_post_dominators(self):
        nodes = set(self.dom)

        # nodes that reach a block without successors
        exits = {n for n in nodes if not self.flow_successors[n]}
        live = set(exits)
        stack = list(exits)
        while stack:
            for p in self.flow_predecessors[stack.pop()]:
                if p in nodes and p not in live:
                    live.add(p)
                    stack.append(p)

        pdom = {n: ({n} if n in exits else set(live)) for n in live}

        changed = True
        while changed:
            changed = False
            for node in sorted(live, reverse = True):
                if node in exits:
                    continue

                new_pdom = set(live)
                for succ in self.flow_successors[node]:
                    if succ in live:
                        new_pdom &= pdom[succ]
                new_pdom.add(node)

                if new_pdom != pdom[node]:
                    pdom[node] = new_pdom
                    changed = True

        self.pdom = {n: pdom.get(n) for n in nodes}
        self.ipdom = {n: self._closest(n, self.pdom) for n in nodes}

    def post_dominates(self, a: int, b: int) -> bool:
        return a in (self.pdom.get(b) or ())

    def find_merge_point(self, block: int) -> int | None:
        '''Where the two arms of a branch at `block` reconverge'''
        return self.ipdom.get(block)

    # ----------------------------------------------------------------- loops --
    def _identify_loops(self):
        for src in sorted(self.dom):
            for dst in self.successors[src]:
                if self.dominates(dst, src):
                    self.back_edges.add((src, dst))
                    self._build_loop(src, dst)

        for loop in self.loops.values():
            loop.exits = {s for b in loop.body for s in self.successors[b] if s not in loop.body}

    def _build_loop(self, tail: int, header: int):
        body = {header, tail}
        worklist = [tail]

        while worklist:
            node = worklist.pop()
            if node == header:
                continue
            for pred in self.predecessors[node]:
                if pred not in body and pred in self.dom:
                    body.add(pred)
                    worklist.append(pred)

        if header in self.loops:
            self.loops[header].back_edges.append((tail, header))
            self.loops[header].body |= body
        else:
            self.loops[header] = LoopInfo(header = header, body = body, back_edges = [(tail, header)])

    def is_loop_header(self, block: int) -> bool:
        return block in self.loops

    def get_loop_info(self, header: int) -> LoopInfo | None:
        return self.loops.get(header)

    def is_back_edge(self, src: int, dst: int) -> bool:
        return (src, dst) in self.back_edges
