"""Vyper specific compilation rules."""

import logging
import re

from eth_utils import keccak

from .auxdata import locate_tail_auxdata
from .bytecode import AuxdataStyle, byte_length, decode_auxdata
from .errors import AuxdataDecodeError, CompilationError

logger = logging.getLogger(__name__)

OUTPUT_SELECTION = [
    'abi',
    'ast',
    'interface',
    'ir',
    'userdoc',
    'devdoc',
    'evm.bytecode.object',
    'evm.bytecode.opcodes',
    'evm.deployedBytecode.object',
    'evm.deployedBytecode.opcodes',
    'evm.deployedBytecode.sourceMap',
    'evm.methodIdentifiers',
]

# 0.3.10b1, 0.4.0rc6+commit.33719560 ...
VERSION_PATTERN = re.compile(r'^v?(\d+)\.(\d+)\.(\d+)(?:b\d+|rc\d+)?(?:\+commit\.[0-9a-f]+)?$')


def parse_version(compiler_version):
    match = VERSION_PATTERN.match(compiler_version)
    if not match:
        raise CompilationError(f"Invalid Vyper compiler version {compiler_version}", "invalid_compiler_version")
    return tuple(int(part) for part in match.groups())


def auxdata_style(compiler_version):
    version = parse_version(compiler_version)
    if version < (0, 3, 5):
        return AuxdataStyle.VYPER_LT_0_3_5
    if version < (0, 3, 10):
        return AuxdataStyle.VYPER_LT_0_3_10
    return AuxdataStyle.VYPER


def init_json_input(json_input, compilation_target):
    json_input.setdefault('language', 'Vyper')
    json_input.setdefault('settings', {})['outputSelection'] = {compilation_target.path: list(OUTPUT_SELECTION)}


def read_metadata(contract_output, compilation):
    """Vyper has no metadata document; build the equivalent from the output and input."""
    target = compilation.compilation_target
    sources = {
        path: {'keccak256': '0x' + keccak(text=source['content']).hex(), 'content': source['content']}
        for path, source in compilation.json_input['sources'].items()
    }
    settings = {key: value for key, value in compilation.json_input.get('settings', {}).items()
                if key != 'outputSelection'}
    settings['compilationTarget'] = {target.path: target.name}
    return {
        'compiler': {'version': compilation.compiler_version},
        'language': 'Vyper',
        'output': {
            'abi': contract_output.get('abi', []),
            'devdoc': contract_output.get('devdoc', {'kind': 'dev', 'methods': {}}),
            'userdoc': contract_output.get('userdoc', {'kind': 'user', 'methods': {}}),
        },
        'settings': settings,
        'sources': sources,
        'version': 1,
    }


def immutable_references(compilation):
    """
    Since 0.3.10 immutables are appended to the runtime code at deploy time.
    Their total size is only known from the creation bytecode auxdata.
    """
    if compilation.auxdata_style != AuxdataStyle.VYPER:
        return {}
    try:
        immutable_size = decode_auxdata(compilation.creation_bytecode, compilation.auxdata_style)['immutableSize']
    except AuxdataDecodeError:
        logger.warning("Cannot decode vyper contract bytecode %s", compilation.creation_bytecode[:64])
        return {}
    if not immutable_size:
        return {}
    return {'0': [{'start': byte_length(compilation.runtime_bytecode), 'length': immutable_size}]}


def link_references(contract_output, creation):
    return {}


def _tail_positions(bytecode, style):
    position = locate_tail_auxdata(bytecode, style)
    if position is None:
        return {}
    return {'1': position}


def generate_auxdata_positions(compilation, force_alternate_backend=False):
    """Vyper only ever writes one auxdata, at the end of the bytecode."""
    style = compilation.auxdata_style
    return (
        _tail_positions(compilation.runtime_bytecode, style),
        _tail_positions(compilation.creation_bytecode, style),
    )
