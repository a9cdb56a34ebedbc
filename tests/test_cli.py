'''
Command line interface
'''

import io
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from qjs_assembler import *

from deqjs.cli import main
from deqjs.common import get_config


def sample() -> bytes:
    jsc = JscBuilder()
    inc = jsc.function('inc', args = ['a'], code = [('get_arg0',), ('push_1',), ('add',), ('return',)])
    return jsc.build(jsc.function('<eval>', cpool = [inc], code = [('return_undef',)]))


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        get_config().reset()
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        self.input = self.dir / 'sample.jsc'
        self.input.write_bytes(sample())

    def tearDown(self):
        get_config().reset()
        self.tmp.cleanup()

    def run_main(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_decompile_to_stdout(self):
        code, out, _ = self.run_main('decompile', 'file', str(self.input))

        self.assertEqual(code, 0)
        self.assertIn('function <eval>() {', out)
        self.assertIn('function inc(a) {', out)
        self.assertIn('return a + 1;', out)

    def test_output_file(self):
        target = self.dir / 'out.js'
        code, out, _ = self.run_main('decompile', 'file', str(self.input), '-o', str(target), '--optimize')

        self.assertEqual(code, 0)
        self.assertEqual(out, '')
        self.assertIn('function inc(a) { return a + 1; }', target.read_text(encoding = 'utf-8'))

    def test_disasm_mode(self):
        code, out, _ = self.run_main('decompile', 'file', str(self.input), '--mode', 'disasm')

        self.assertEqual(code, 0)
        self.assertIn('function inc (args=1, vars=0, strict=false)\nbytecode:\n', out)

    def test_truncated_input(self):
        self.input.write_bytes(sample()[:-3])
        code, out, err = self.run_main('decompile', 'file', str(self.input))

        self.assertEqual(code, 1)
        self.assertEqual(out, '')
        self.assertIn('decompile error:', err)

    def test_missing_file(self):
        code, _, err = self.run_main('decompile', 'file', str(self.dir / 'missing.jsc'))

        self.assertEqual(code, 1)
        self.assertIn('failed to read', err)

    def test_version_mismatch(self):
        code, _, err = self.run_main('decompile', 'file', str(self.input), '--version', 'legacy')

        self.assertEqual(code, 1)
        self.assertIn('decompile error:', err)

    def test_unknown_mode_in_config(self):
        config = self.dir / 'bad.json5'
        config.write_text("{mode: 'bogus'}", encoding = 'utf-8')
        code, out, err = self.run_main('decompile', 'file', str(self.input), '--config', str(config))

        self.assertEqual(code, 1)
        self.assertEqual(out, '')
        self.assertIn('decompile error:', err)
        self.assertIn('bogus', err)

    def test_unknown_version_in_config(self):
        config = self.dir / 'bad.json5'
        config.write_text("{version: 'ancient'}", encoding = 'utf-8')
        code, _, err = self.run_main('decompile', 'file', str(self.input), '--config', str(config))

        self.assertEqual(code, 1)
        self.assertIn('decompile error:', err)

    def test_no_command(self):
        code, out, _ = self.run_main()

        self.assertEqual(code, 0)
        self.assertIn('usage: deqjs', out)


if __name__ == '__main__':
    unittest.main()
