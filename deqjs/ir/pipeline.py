'''IR Pipeline - Pass Manager'''

from typing import Any, List

from ..common import *

logger = logging.getLogger(__name__)


class Pass:
    '''Pass base class'''

    def run(self, input_data: Any) -> Any:
        '''Execute the pass'''
        raise NotImplementedError(f'{self.__class__.__name__}.run() not implemented')

    @property
    def name(self) -> str:
        return self.__class__.__name__


class Pipeline:
    '''Pass Pipeline'''

    def __init__(self, passes: List[Pass] = None):
        '''Initialize pipeline'''
        self.passes = passes or []

    def add_pass(self, pass_obj: Pass) -> 'Pipeline':
        '''Add a pass to the pipeline'''
        self.passes.append(pass_obj)
        return self

    def run(self, input_data: Any, debug: bool = False) -> Any:
        '''Run all passes in the pipeline'''
        result = input_data
        for pass_obj in self.passes:
            if debug:
                logger.debug('running %s', pass_obj.name)
            result = pass_obj.run(result)
            if debug:
                logger.debug('%s done', pass_obj.name)
        return result


class FixedPointPipeline(Pipeline):
    '''Runs the passes in order, repeatedly, until a round changes nothing

    `snapshot` extracts the value compared between rounds (structural IR
    equality); `max_iterations` caps the number of rounds.
    '''

    def __init__(self, passes: List[Pass] = None, max_iterations: int = 8, snapshot = None):
        super().__init__(passes)
        self.max_iterations = max_iterations
        self.snapshot = snapshot or (lambda data: data)
        self.iterations = 0

    def run(self, input_data: Any, debug: bool = False) -> Any:
        result = input_data
        self.iterations = 0
        while self.iterations < self.max_iterations:
            before = self.snapshot(result)
            result = super().run(result, debug)
            self.iterations += 1

            if self.snapshot(result) == before:
                if debug:
                    logger.debug('fixed point after %d rounds', self.iterations)
                break
        else:
            logger.debug('stopped after %d rounds without reaching a fixed point', self.iterations)

        return result


class FunctionPass(Pass):
    '''Pass applied to the body of every structured function of a program

    Subclasses implement `run_function`, returning the new body.
    '''

    def run(self, program):
        for fn in program.structured():
            body = self.run_function(fn, program)
            if body is not fn.body:
                fn.body = body
        return program

    def run_function(self, fn, program):
        raise NotImplementedError(f'{self.__class__.__name__}.run_function() not implemented')
