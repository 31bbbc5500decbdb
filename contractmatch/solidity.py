"""Solidity specific compilation rules."""

import copy
import json
import logging

from .auxdata import find_auxdata_positions, find_auxdatas_in_legacy_assembly, locate_tail_auxdata
from .bytecode import AuxdataStyle

logger = logging.getLogger(__name__)

OUTPUT_SELECTION = [
    'abi',
    'devdoc',
    'userdoc',
    'storageLayout',
    'evm.legacyAssembly',
    'evm.bytecode.object',
    'evm.bytecode.sourceMap',
    'evm.bytecode.linkReferences',
    'evm.bytecode.generatedSources',
    'evm.deployedBytecode.object',
    'evm.deployedBytecode.sourceMap',
    'evm.deployedBytecode.linkReferences',
    'evm.deployedBytecode.immutableReferences',
    'metadata',
]


def init_json_input(json_input, compilation_target):
    json_input.setdefault('language', 'Solidity')
    json_input.setdefault('settings', {})['outputSelection'] = {'*': {'*': list(OUTPUT_SELECTION)}}


def auxdata_style(compiler_version):
    return AuxdataStyle.SOLIDITY


def read_metadata(contract_output, compilation):
    return json.loads(contract_output['metadata'].strip())


def immutable_references(compilation):
    return compilation.contract_output['evm']['deployedBytecode'].get('immutableReferences') or {}


def link_references(contract_output, creation):
    section = 'bytecode' if creation else 'deployedBytecode'
    return contract_output['evm'][section].get('linkReferences') or {}


def generate_edited_output(compilation, force_alternate_backend=False):
    """
    Recompile with one space appended to every source. Only the source hashes
    change, so only the metadata hashes inside the auxdata move.
    """
    json_input = copy.deepcopy(compilation.json_input)
    for source in json_input['sources'].values():
        source['content'] += ' '
    return compilation.compiler.compile(compilation.compiler_version, json_input, force_alternate_backend)


def _single_tail_position(bytecode, reported_auxdata):
    position = locate_tail_auxdata(bytecode, AuxdataStyle.SOLIDITY)
    if position is None or position.value[2:].lower() != reported_auxdata.lower():
        return None
    return {'1': position}


def generate_auxdata_positions(compilation, force_alternate_backend=False):
    """Returns (runtime_positions, creation_positions)."""
    contract = compilation.contract_output
    auxdatas = find_auxdatas_in_legacy_assembly(contract['evm'].get('legacyAssembly'))

    # compiled with metadata disabled
    if not auxdatas:
        return {}, {}

    runtime_positions = None
    if len(auxdatas) == 1:
        runtime_positions = _single_tail_position(compilation.runtime_bytecode, auxdatas[0])
        if runtime_positions is None:
            raise ValueError("The auxdata at the end of the runtime bytecode differs from the compiler's")
        # the creation auxdata is not at the tail when the constructor embeds other code after it
        creation_positions = _single_tail_position(compilation.creation_bytecode, auxdatas[0])
        if creation_positions is not None:
            return runtime_positions, creation_positions

    logger.debug("Recompiling %s with edited sources to locate %d auxdatas",
                 compilation.compilation_target.name, len(auxdatas))
    try:
        edited_contract, edited_auxdatas = _edited_contract(compilation, force_alternate_backend)
        if runtime_positions is None:
            runtime_positions = find_auxdata_positions(
                compilation.runtime_bytecode,
                '0x' + edited_contract['evm']['deployedBytecode']['object'],
                auxdatas,
                edited_auxdatas,
            )
        creation_positions = find_auxdata_positions(
            compilation.creation_bytecode,
            '0x' + edited_contract['evm']['bytecode']['object'],
            auxdatas,
            edited_auxdatas,
        )
    except Exception as e:
        if runtime_positions is None:
            raise
        # the runtime auxdata was found at the tail, only the creation one is unknown
        logger.warning("Cannot locate the creation auxdata of %s: %s", compilation.compilation_target.name, e)
        return runtime_positions, None
    return runtime_positions, creation_positions


def _edited_contract(compilation, force_alternate_backend):
    edited_output = generate_edited_output(compilation, force_alternate_backend)
    target = compilation.compilation_target
    edited_contract = edited_output['contracts'][target.path][target.name]
    return edited_contract, find_auxdatas_in_legacy_assembly(edited_contract['evm'].get('legacyAssembly'))
