"""
Transformations explain, region by region, how a recompiled bytecode becomes
the on-chain bytecode: library addresses, immutable values, constructor
arguments, auxdata bytes and call protection addresses.

Each extractor works on the recompiled "template", fills the region from the
"real" on-chain bytecode and records what it substituted. The order in which
callers concatenate the returned transformations is significant, replaying
them in that order on the canonical recompiled bytecode rebuilds the
on-chain bytecode.
"""

import logging
from collections import namedtuple
from dataclasses import dataclass, field

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .bytecode import AuxdataStyle, byte_length, strip_0x
from .errors import ConstructorArgumentsError, LibraryPlaceholderError, RegionMismatchError

logger = logging.getLogger(__name__)

INSERT = "insert"
REPLACE = "replace"

CONSTRUCTOR_ARGUMENTS = "constructorArguments"
LIBRARY = "library"
IMMUTABLE = "immutable"
CBOR_AUXDATA = "cborAuxdata"
CALL_PROTECTION = "callProtection"

PUSH20 = "73"
ADDRESS_CHARS = 40
CALL_PROTECTION_PREFIX = "0x" + PUSH20 + "0" * ADDRESS_CHARS
ZERO_PLACEHOLDER = "0" * ADDRESS_CHARS


@dataclass(frozen=True)
class Transformation:
    type: str
    reason: str
    offset: int
    id: str = None

    def to_dict(self):
        result = {"type": self.type, "reason": self.reason, "offset": self.offset}
        if self.id is not None:
            result["id"] = self.id
        return result


def call_protection_transformation():
    # the address starts right after the PUSH20 opcode
    return Transformation(REPLACE, CALL_PROTECTION, 1)


def constructor_transformation(offset):
    return Transformation(INSERT, CONSTRUCTOR_ARGUMENTS, offset)


def auxdata_transformation(offset, id):
    return Transformation(REPLACE, CBOR_AUXDATA, offset, id)


def library_transformation(offset, id):
    return Transformation(REPLACE, LIBRARY, offset, id)


def immutables_transformation(offset, id, type):
    return Transformation(type, IMMUTABLE, offset, id)


@dataclass
class TransformationValues:
    constructor_arguments: str = None
    call_protection: str = None
    libraries: dict = field(default_factory=dict)
    immutables: dict = field(default_factory=dict)
    cbor_auxdata: dict = field(default_factory=dict)

    def merge(self, other):
        """New values holding both sides, `other` winning on conflicts."""
        return TransformationValues(
            constructor_arguments=other.constructor_arguments or self.constructor_arguments,
            call_protection=other.call_protection or self.call_protection,
            libraries={**self.libraries, **other.libraries},
            immutables={**self.immutables, **other.immutables},
            cbor_auxdata={**self.cbor_auxdata, **other.cbor_auxdata},
        )

    def lookup(self, transformation):
        if transformation.reason == CONSTRUCTOR_ARGUMENTS:
            return self.constructor_arguments
        if transformation.reason == CALL_PROTECTION:
            return self.call_protection
        if transformation.reason == LIBRARY:
            return self.libraries[transformation.id]
        if transformation.reason == IMMUTABLE:
            return self.immutables[transformation.id]
        if transformation.reason == CBOR_AUXDATA:
            return self.cbor_auxdata[transformation.id]
        raise ValueError(f"Unknown transformation reason {transformation.reason}")

    def to_dict(self):
        result = {}
        if self.constructor_arguments is not None:
            result[CONSTRUCTOR_ARGUMENTS] = self.constructor_arguments
        if self.call_protection is not None:
            result[CALL_PROTECTION] = self.call_protection
        if self.libraries:
            result["libraries"] = dict(self.libraries)
        if self.immutables:
            result["immutables"] = dict(self.immutables)
        if self.cbor_auxdata:
            result[CBOR_AUXDATA] = dict(self.cbor_auxdata)
        return result


Extraction = namedtuple("Extraction", ["populated_bytecode", "transformations", "values", "library_map"])


def _splice(bytecode, start, value_hex, length=None):
    """Write `value_hex` at byte `start` of a 0x bytecode, over `length` bytes (0 inserts)."""
    if length is None:
        length = len(value_hex) // 2
    char_start = 2 + start * 2
    return bytecode[:char_start] + value_hex + bytecode[char_start + length * 2:]


def _slice(bytecode, start, length):
    char_start = 2 + start * 2
    return bytecode[char_start:char_start + length * 2]


def _onchain_region(real, start, length, what):
    """The `length` bytes of `real` at `start`, which must lie inside it."""
    if start + length > byte_length(real):
        raise RegionMismatchError(
            f"{what} at byte {start} spans {length} bytes but the on-chain bytecode has {byte_length(real)}"
        )
    return _slice(real, start, length)


def extract_call_protection(template, real):
    """Libraries deployed with call protection start with PUSH20 of their own address."""
    if not template.startswith(CALL_PROTECTION_PREFIX):
        return Extraction(template, [], TransformationValues(), {})

    address = _onchain_region(real, 1, ADDRESS_CHARS // 2, "Call protection address")
    populated = _splice(template, 1, address)
    values = TransformationValues(call_protection="0x" + address)
    return Extraction(populated, [call_protection_transformation()], values, {})


def library_placeholder(fqn):
    """The placeholder solc >= 0.5.0 writes for a library link."""
    return "__$" + keccak(text=fqn).hex()[:34] + "$__"


def legacy_library_placeholder(fqn):
    """Placeholders before 0.5.0 were the (truncated) name padded with underscores."""
    return "__" + fqn[:36].ljust(38, "_")


def extract_libraries(template, real, link_references):
    """
    Replace every linked library slot of `template` with the address found in `real`.

    Example link_references: {"contracts/Lib.sol": {"Lib": [{"start": 6, "length": 20}]}}
    """
    transformations = []
    values = TransformationValues()
    library_map = {}

    for file_name, libraries in (link_references or {}).items():
        for library_name, references in libraries.items():
            fqn = f"{file_name}:{library_name}"
            for reference in references:
                start, length = reference["start"], reference["length"]
                placeholder = _slice(template, start, length)
                accepted = (library_placeholder(fqn), legacy_library_placeholder(fqn), ZERO_PLACEHOLDER)
                if placeholder not in accepted:
                    raise LibraryPlaceholderError(
                        f"Library placeholder mismatch for {fqn} at byte {start}: {placeholder} "
                        f"vs {accepted[0]} or {accepted[1]}"
                    )

                address = _onchain_region(real, start, length, f"Library {fqn}")
                recorded = values.libraries.get(fqn)
                if recorded is not None and recorded != "0x" + address:
                    raise RegionMismatchError(f"Library {fqn} is linked to both {recorded} and 0x{address}")
                template = _splice(template, start, address)
                library_map[placeholder] = "0x" + address
                values.libraries[fqn] = "0x" + address
                transformations.append(library_transformation(start, fqn))

    return Extraction(template, transformations, values, library_map)


def extract_immutables(template, real, immutable_references, auxdata_style=AuxdataStyle.SOLIDITY):
    """
    Fill immutable slots of `template` with the deployed values.

    Example immutable_references: {"97": [{"start": 137, "length": 32}]} where 97 is the AST id.
    Vyper >= 0.3.10 appends immutables after the runtime code at deploy time, so
    they are inserted rather than replaced.
    """
    transformations = []
    values = TransformationValues()

    for ast_id, references in (immutable_references or {}).items():
        for reference in references:
            start, length = reference["start"], reference["length"]
            value = _onchain_region(real, start, length, f"Immutable {ast_id}")
            recorded = values.immutables.get(ast_id)
            if recorded is not None and recorded != "0x" + value:
                raise RegionMismatchError(
                    f"Immutable {ast_id} holds {recorded} and 0x{value} at different occurrences"
                )
            if auxdata_style == AuxdataStyle.VYPER:
                template = _splice(template, start, value, length=0)
                transformations.append(immutables_transformation(start, ast_id, INSERT))
            else:
                template = _splice(template, start, value)
                transformations.append(immutables_transformation(start, ast_id, REPLACE))
            values.immutables[ast_id] = "0x" + value

    return Extraction(template, transformations, values, {})


def extract_auxdata(template, real, auxdata_positions):
    """Copy the on-chain bytes of every auxdata region into `template`."""
    transformations = []
    values = TransformationValues()

    for auxdata_id, position in (auxdata_positions or {}).items():
        length = byte_length(position.value)
        onchain_value = _onchain_region(real, position.offset, length, f"Auxdata {auxdata_id}")
        template = _splice(template, position.offset, onchain_value, length=length)
        transformations.append(auxdata_transformation(position.offset, auxdata_id))
        values.cbor_auxdata[auxdata_id] = "0x" + onchain_value

    return Extraction(template, transformations, values, {})


def abi_type_string(param):
    """Canonical ABI type of a json ABI parameter, expanding tuples."""
    abi_type = param["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(abi_type_string(component) for component in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def constructor_inputs(abi):
    for entry in abi or []:
        if entry.get("type") == "constructor":
            return entry.get("inputs")
    return None


def extract_constructor_arguments(real_creation, template_creation, abi):
    """
    Treat the bytes the on-chain creation bytecode has beyond the template as
    ABI encoded constructor arguments, and check they re-encode identically.
    """
    if len(real_creation) <= len(template_creation):
        return Extraction(template_creation, [], TransformationValues(), {})

    encoded = real_creation[len(template_creation):].lower()
    inputs = constructor_inputs(abi)
    if not inputs:
        raise ConstructorArgumentsError(
            "Failed to match with creation bytecode: constructor ABI inputs are missing"
        )

    types = [abi_type_string(param) for param in inputs]
    try:
        decoded = abi_decode(types, bytes.fromhex(encoded))
        reencoded = abi_encode(types, decoded).hex()
    except (DecodingError, ValueError) as e:
        raise ConstructorArgumentsError(
            f"Failed to match with creation bytecode: constructor arguments could not be decoded: {e}"
        )
    # the decoder is lenient, only an identical re-encoding proves the arguments
    if reencoded != encoded:
        raise ConstructorArgumentsError(
            f"Failed to match with creation bytecode: constructor arguments ABI decoding failed "
            f"0x{reencoded} vs 0x{encoded}"
        )

    offset = byte_length(template_creation)
    logger.debug("Found %d bytes of constructor arguments at offset %d", len(encoded) // 2, offset)
    values = TransformationValues(constructor_arguments="0x" + encoded)
    return Extraction(real_creation, [constructor_transformation(offset)], values, {})


def apply_transformations(recompiled, transformations, values):
    """Replay `transformations` on the canonical recompiled bytecode."""
    bytecode = "0x" + strip_0x(recompiled)
    for transformation in transformations:
        value = strip_0x(values.lookup(transformation))
        if transformation.type == INSERT:
            bytecode = _splice(bytecode, transformation.offset, value, length=0)
        else:
            bytecode = _splice(bytecode, transformation.offset, value)
    return bytecode
