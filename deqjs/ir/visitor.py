'''Operation-tag dispatch over the JS IR'''

from typing import Any, Callable

from .js_ir import *


class IRVisitor:
    '''Dispatches each node to `visit_<operation>`

    A visitor that meets an operation it has no method for raises, so every
    stage has to handle every IR variant.
    '''

    def visit(self, node: JSNode, *args, **kwargs) -> Any:
        method = getattr(self, f'visit_{node.operation.name.lower()}', None)
        if method is None:
            raise NotImplementedError(f'{self.__class__.__name__} does not handle IR operation {node.operation.name}')

        return method(node, *args, **kwargs)


def missing_handlers(visitor_cls: type) -> list[Operation]:
    '''Operations a visitor class has no method for'''
    return [op for op in Operation if not hasattr(visitor_cls, f'visit_{op.name.lower()}')]


class IRTransformer(IRVisitor):
    '''Bottom-up rebuilding visitor

    Every operation defaults to `generic_visit`, which transforms the fields
    and returns the original node when nothing changed. A statement visit may
    return a list (spliced into the enclosing list) or None (removed).
    '''

    def visit(self, node: JSNode, *args, **kwargs) -> Any:
        method = getattr(self, f'visit_{node.operation.name.lower()}', None)
        if method is None:
            return self.generic_visit(node)
        return method(node, *args, **kwargs)

    def generic_visit(self, node: JSNode) -> JSNode:
        changes = {}
        for name in node._fields:
            value = getattr(node, name)

            if isinstance(value, JSNode):
                new_value = self.visit(value)
                if isinstance(value, Block) and not isinstance(new_value, Block):
                    new_value = Block(self._as_list(new_value))

            elif isinstance(value, list):
                new_value = self.visit_list(value)

            else:
                continue

            if new_value is not value:
                changes[name] = new_value

        return node.replace(**changes) if changes else node

    def visit_list(self, items: list) -> list:
        out = []
        changed = False
        for item in items:
            if not isinstance(item, JSNode):
                out.append(item)
                continue

            result = self.visit(item)
            if result is not item:
                changed = True

            out.extend(self._as_list(result))

        return out if changed else items

    @staticmethod
    def _as_list(result) -> list:
        if result is None:
            return []

        if isinstance(result, list):
            return result

        return [result]

    def transform_block(self, block: Block) -> Block:
        result = self.visit(block)
        return result if isinstance(result, Block) else Block(self._as_list(result))


class Substituter(IRTransformer):
    '''Replace nodes chosen by `lookup`

    A node visited twice maps to the same result object, so expressions that
    were shared on the evaluation stack stay shared after substitution.
    '''

    def __init__(self, lookup: Callable[[JSNode], JSNode | None]):
        self.lookup = lookup
        self.memo: dict[int, JSNode] = {}

    def visit(self, node: JSNode, *args, **kwargs) -> Any:
        key = id(node)
        if key in self.memo:
            return self.memo[key]

        replacement = self.lookup(node)
        result = self.generic_visit(node) if replacement is None else replacement
        self.memo[key] = result
        return result


def substitute(node: JSNode, lookup: Callable[[JSNode], JSNode | None]) -> JSNode:
    return Substituter(lookup).visit(node)
