'''deqjs command line interface

    deqjs decompile file <path> [--mode pseudo|literal|disasm] [--version auto|current|legacy]
                                [--deobfuscate] [--optimize] [--output PATH]
                                [--config FILE] [--log-level LEVEL] [-v]
'''

import argparse
import logging
import sys
from pathlib import Path

from .common import *
from .codegen import available_modes
from .decompiler import DecompileOptions, decompile

logger = logging.getLogger(__name__)


def setup_logging(level: str):
    logging.basicConfig(
        level   = getattr(logging, level.upper(), logging.WARNING),
        format  = '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream  = sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog        = 'deqjs',
        description = 'QuickJS bytecode decompiler',
    )

    subparsers = parser.add_subparsers(dest = 'command', help = 'available commands')

    decompile_parser = subparsers.add_parser('decompile', help = 'decompile QuickJS bytecode')
    targets = decompile_parser.add_subparsers(dest = 'target', help = 'input kind')

    file_parser = targets.add_parser('file', help = 'decompile a .jsc file')
    file_parser.add_argument('path', help = 'path to the QuickJS bytecode file')
    file_parser.add_argument('--mode', choices = available_modes(), help = 'output mode')
    file_parser.add_argument('--version', choices = ['auto', 'current', 'legacy'], help = 'bytecode format version')
    file_parser.add_argument('--deobfuscate', action = 'store_true', default = None,
                             help = 'undo common obfuscation and name anonymous functions')
    file_parser.add_argument('--optimize', action = 'store_true', default = None,
                             help = 'simplify the generated code')
    file_parser.add_argument('-o', '--output', help = 'write the output here instead of stdout')
    file_parser.add_argument('--config', help = 'JSON5 configuration file')
    file_parser.add_argument('--log-level', dest = 'log_level', help = 'logging level (DEBUG, INFO, WARNING, ...)')
    file_parser.add_argument('-v', '--verbose', action = 'store_true', help = 'same as --log-level DEBUG')

    return parser


def decompile_file(args: argparse.Namespace) -> int:
    path = Path(args.path)
    try:
        data = path.read_bytes()
    except OSError as e:
        print(f'decompile error: failed to read {path}: {e}', file = sys.stderr)
        return 1

    try:
        result = decompile(data, DecompileOptions.from_config())
    except (DecompileError, ValueError) as e:       # ValueError: unknown mode or version in a config file
        print(f'decompile error: {e}', file = sys.stderr)
        return 1

    for w in result.warnings:
        logger.warning('%s: %s', w.function or '<anonymous>', w)

    if args.output:
        try:
            Path(args.output).write_text(result.text, encoding = 'utf-8')
        except OSError as e:
            print(f'decompile error: failed to write {args.output}: {e}', file = sys.stderr)
            return 1

        logger.info('wrote %s', args.output)
    else:
        sys.stdout.write(result.text)

    return 0


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command != 'decompile' or args.target != 'file':
        parser.print_help()
        return 0 if args.command is None else 2

    init_config(argv)
    config = get_config()
    if args.verbose:
        config.set('log_level', 'DEBUG')
    setup_logging(str(config.get('log_level', 'WARNING')))

    return decompile_file(args)


if __name__ == '__main__':
    sys.exit(main())
