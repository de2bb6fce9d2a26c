#!/usr/bin/env python3
import argparse
import logging
import os
import sys

import argcomplete
from argcomplete.completers import DirectoriesCompleter, FilesCompleter

from .config import load_config
from .convert import convert_files, list_input_dir, read_inputfilelist
from .errors import ConversionError


def _input_groups(args):
    """Input files grouped by output resource, from --inputfile, --inputfilelist or --inputdir."""
    if args.inputfilelist:
        try:
            return read_inputfilelist(args.inputfilelist)
        except OSError as e:
            raise ConversionError(f"can not read input file list {args.inputfilelist}: {e}") from e
    if args.inputdir:
        if not os.path.isdir(args.inputdir):
            raise ConversionError("not a directory: " + args.inputdir)
        return [[filename] for filename in list_input_dir(args.inputdir)]
    return [[filename] for filename in args.inputfile]


def convert(args):
    """
    Converts the input files to text resources and stand-off annotations in args.outdir.

    Nothing is written if a conversion fails, unless --ignore-errors is set in which
    case the failing inputs are skipped.
    """
    config = load_config(args.config)
    groups = _input_groups(args)
    if not groups:
        logging.warning("no input files")
        return
    store = convert_files(config, groups, ignore_errors=args.ignore_errors,
                          provenance=args.provenance, id_prefix=args.id_prefix)
    path = store.save(args.outdir)
    logging.info("wrote %d resources and %d annotations to %s", len(store.resources), len(store.annotations), path)


def check_config(args):
    """Loads and compiles a configuration, reporting the first structural problem."""
    config = load_config(args.config)
    for rule in config.elements:
        logging.info("%s: text=%s stop=%s annotation=%s whitespace=%s", rule.path, rule.emits_text, rule.stops,
                     rule.annotation_kind.value, rule.whitespace.value if rule.whitespace else "Inherit")
    logging.info("configuration %s is valid", args.config)


def _set_completer(parser, option_flag, completer):
    """Attach an argcomplete completer to the option if present."""
    for action in getattr(parser, "_actions", []):
        if option_flag in getattr(action, "option_strings", []):
            action.completer = completer
            break


def main(argv=None):
    # Create the top-level parser
    parser = argparse.ArgumentParser(prog='standoff-mapper', description='Convert XML documents to plain text with stand-off annotations')
    parser.add_argument('--debug', action='store_true', help='Log debug information, including the traversal')
    subparsers = parser.add_subparsers(dest='command', help='Commands')
    subparsers.required = True

    # Parser for the convert command
    convert_parser = subparsers.add_parser('convert', help='Convert XML files according to a mapping configuration')
    convert_parser.add_argument('--config', required=True, help='Mapping configuration (.toml, .yaml or .json)')
    inputs = convert_parser.add_mutually_exclusive_group(required=True)
    inputs.add_argument('--inputfile', nargs='+', help='XML file(s), each one becomes a resource')
    inputs.add_argument('--inputfilelist', help='File with one input per line, tab separated files on a line form a single resource')
    inputs.add_argument('--inputdir', help='Directory of XML files, each one becomes a resource')
    convert_parser.add_argument('--outdir', required=True, help='Directory to write the text files and annotations to')
    convert_parser.add_argument('--id-prefix', dest='id_prefix', help='Prefix for annotation ids, {resource} is replaced by the resource id')
    convert_parser.add_argument('--provenance', action='store_true', help='Record the source file and XPath of each annotation')
    convert_parser.add_argument('--ignore-errors', dest='ignore_errors', action='store_true', help='Skip inputs that fail to convert instead of aborting')
    convert_parser.set_defaults(func=convert)

    # Parser for the check_config command
    check_parser = subparsers.add_parser('check_config', help='Load and compile a mapping configuration')
    check_parser.add_argument('--config', required=True, help='Mapping configuration (.toml, .yaml or .json)')
    check_parser.set_defaults(func=check_config)

    # Path-like completions
    _set_completer(convert_parser, '--config', FilesCompleter())
    _set_completer(convert_parser, '--inputfile', FilesCompleter())
    _set_completer(convert_parser, '--inputfilelist', FilesCompleter())
    _set_completer(convert_parser, '--inputdir', DirectoriesCompleter())
    _set_completer(convert_parser, '--outdir', DirectoriesCompleter())
    _set_completer(check_parser, '--config', FilesCompleter())

    # Activate argcomplete for this parser
    argcomplete.autocomplete(parser)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    try:
        args.func(args)
    except ConversionError as e:
        logging.error("%s", e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
