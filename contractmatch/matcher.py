"""
Classify how a recompiled bytecode matches an on-chain bytecode.

A perfect match is byte identical code whose auxdata commits to the
metadata by content hash. A partial match is identical code once the
auxdata regions are substituted with the on-chain bytes, or identical code
without a provable metadata hash.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from .bytecode import AuxdataStyle, decode_auxdata, has_content_hash, normalize_hex
from .errors import AuxdataDecodeError, RegionMismatchError
from .transformations import (
    TransformationValues,
    extract_auxdata,
    extract_call_protection,
    extract_constructor_arguments,
    extract_immutables,
    extract_libraries,
)

logger = logging.getLogger(__name__)


class MatchStatus(Enum):
    PERFECT = "perfect"
    PARTIAL = "partial"
    NONE = "none"

    @property
    def matched(self):
        return self != MatchStatus.NONE


@dataclass(frozen=True)
class MatchResult:
    status: MatchStatus
    transformations: list = field(default_factory=list)
    values: TransformationValues = field(default_factory=TransformationValues)
    populated_bytecode: str = None
    library_map: dict = field(default_factory=dict)


def _bytecodes_match(is_creation, template, real):
    # creation bytecode is followed by the constructor arguments on chain
    if is_creation:
        return real.startswith(template)
    return template == real


def _auxdatas_have_content_hash(auxdata_positions, auxdata_style):
    for auxdata_id, position in auxdata_positions.items():
        try:
            decoded = decode_auxdata(position.value, auxdata_style)
        except AuxdataDecodeError as e:
            logger.debug("Auxdata %s cannot be decoded: %s", auxdata_id, e)
            return False
        if not has_content_hash(decoded):
            logger.debug("Auxdata %s has no content hash", auxdata_id)
            return False
    return True


def match_bytecodes(is_creation, template, real, link_references, auxdata_positions,
                    immutable_references=None, auxdata_style=AuxdataStyle.SOLIDITY, abi=None):
    """
    Match `template` (recompiled) against `real` (on-chain).

    `auxdata_positions` is None when they could not be located, in which
    case only an exact match is possible. Library placeholder and
    constructor argument errors are raised, not reported as NONE. A region
    the on-chain bytecode cannot fill is a mismatch.
    """
    real = normalize_hex(real)
    try:
        return _match_bytecodes(is_creation, template, real, link_references, auxdata_positions,
                                immutable_references, auxdata_style, abi)
    except RegionMismatchError as e:
        logger.debug("Bytecodes differ: %s", e)
        return MatchResult(MatchStatus.NONE, populated_bytecode=normalize_hex(template))


def _match_bytecodes(is_creation, template, real, link_references, auxdata_positions,
                     immutable_references, auxdata_style, abi):
    libraries = extract_libraries(template, real, link_references)
    populated = normalize_hex(libraries.populated_bytecode)
    transformations = list(libraries.transformations)
    values = libraries.values

    if immutable_references:
        immutables = extract_immutables(populated, real, immutable_references, auxdata_style)
        populated = immutables.populated_bytecode
        transformations += immutables.transformations
        values = values.merge(immutables.values)

    if _bytecodes_match(is_creation, populated, real):
        if auxdata_positions and _auxdatas_have_content_hash(auxdata_positions, auxdata_style):
            status = MatchStatus.PERFECT
        else:
            status = MatchStatus.PARTIAL
    elif not auxdata_positions:
        logger.debug("Bytecodes differ and there are no auxdatas to substitute")
        return MatchResult(MatchStatus.NONE, transformations, values, populated, libraries.library_map)
    else:
        auxdata = extract_auxdata(populated, real, auxdata_positions)
        if not _bytecodes_match(is_creation, auxdata.populated_bytecode, real):
            logger.debug("Bytecodes differ outside of the auxdatas")
            return MatchResult(MatchStatus.NONE, transformations, values, populated, libraries.library_map)
        populated = auxdata.populated_bytecode
        transformations += auxdata.transformations
        values = values.merge(auxdata.values)
        status = MatchStatus.PARTIAL

    if is_creation:
        arguments = extract_constructor_arguments(real, populated, abi)
        populated = arguments.populated_bytecode
        transformations += arguments.transformations
        values = values.merge(arguments.values)

    return MatchResult(status, transformations, values, populated, libraries.library_map)


def match_runtime_bytecode(template, real, link_references, auxdata_positions,
                           immutable_references=None, auxdata_style=AuxdataStyle.SOLIDITY):
    """Runtime transformations come in the order call protection, libraries, immutables, auxdata."""
    real = normalize_hex(real)
    try:
        protection = extract_call_protection(template, real)
    except RegionMismatchError as e:
        logger.debug("Bytecodes differ: %s", e)
        return MatchResult(MatchStatus.NONE, populated_bytecode=template)
    result = match_bytecodes(
        False, protection.populated_bytecode, real, link_references, auxdata_positions,
        immutable_references=immutable_references, auxdata_style=auxdata_style,
    )
    if not protection.transformations:
        return result
    return MatchResult(
        result.status,
        protection.transformations + result.transformations,
        protection.values.merge(result.values),
        result.populated_bytecode,
        result.library_map,
    )


def match_creation_bytecode(template, real, link_references, auxdata_positions, abi,
                            auxdata_style=AuxdataStyle.SOLIDITY):
    """Creation transformations come in the order libraries, auxdata, constructor arguments."""
    return match_bytecodes(True, template, real, link_references, auxdata_positions,
                           auxdata_style=auxdata_style, abi=abi)
