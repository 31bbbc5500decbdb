"""
Bytecode helpers: hex normalization and the CBOR auxdata trailer.

Bytecodes travel through the package as "0x"-prefixed lowercase hex strings.
Recompiled templates may still contain library placeholders (``__$...$__``)
and are therefore not always valid hex until they are linked.
"""

from enum import Enum

import base58
import cbor2

from .config import get_ipfs_gateway
from .errors import AuxdataDecodeError

# {"vyper": [0, 3, x]} written without a length suffix by vyper < 0.3.5
VYPER_LT_0_3_5_AUXDATA_LENGTH = 11
LENGTH_SUFFIX_CHARS = 4


class AuxdataStyle(Enum):
    SOLIDITY = "solidity"
    VYPER = "vyper"
    VYPER_LT_0_3_10 = "vyper_lt_0_3_10"
    VYPER_LT_0_3_5 = "vyper_lt_0_3_5"


def strip_0x(bytecode):
    if bytecode.startswith("0x") or bytecode.startswith("0X"):
        return bytecode[2:]
    return bytecode


def normalize_hex(bytecode):
    """Canonical rendering: lowercase with a 0x prefix."""
    return "0x" + strip_0x(bytecode).lower()


def byte_length(bytecode):
    return len(strip_0x(bytecode)) // 2


def _cbor_loads(cbor_hex):
    return cbor2.loads(bytes.fromhex(cbor_hex))


def split_auxdata(bytecode, style=AuxdataStyle.SOLIDITY):
    """
    Split a bytecode into (execution, auxdata_cbor, cbor_length_hex).

    The auxdata parts are None when the bytecode does not end with a CBOR
    trailer in the given style. A bare auxdata value (cbor plus length
    suffix) splits into an empty execution part.
    """
    if not bytecode:
        raise ValueError("Bytecode cannot be empty")
    body = strip_0x(bytecode)
    no_auxdata = ("0x" + body, None, None)

    if style == AuxdataStyle.VYPER_LT_0_3_5:
        cbor_chars = VYPER_LT_0_3_5_AUXDATA_LENGTH * 2
        if len(body) < cbor_chars:
            return no_auxdata
        execution = body[:-cbor_chars]
        auxdata = body[-cbor_chars:]
        length_hex = ""
    else:
        if len(body) < LENGTH_SUFFIX_CHARS:
            return no_auxdata
        length_hex = body[-LENGTH_SUFFIX_CHARS:]
        try:
            cbor_chars = int(length_hex, 16) * 2
        except ValueError:
            return no_auxdata

        if style == AuxdataStyle.VYPER:
            # the length counts the two length bytes themselves
            if cbor_chars < LENGTH_SUFFIX_CHARS or len(body) < cbor_chars:
                return no_auxdata
            execution = body[:len(body) - cbor_chars]
            auxdata = body[len(body) - cbor_chars:-LENGTH_SUFFIX_CHARS]
        else:
            if len(body) - LENGTH_SUFFIX_CHARS - cbor_chars < 0:
                return no_auxdata
            execution = body[:len(body) - LENGTH_SUFFIX_CHARS - cbor_chars]
            auxdata = body[len(body) - LENGTH_SUFFIX_CHARS - cbor_chars:-LENGTH_SUFFIX_CHARS]

    if not auxdata:
        return no_auxdata
    try:
        _cbor_loads(auxdata)
    except (ValueError, TypeError):
        return no_auxdata
    return "0x" + execution, auxdata, length_hex


def _vyper_version(entry):
    return ".".join(str(part) for part in entry["vyper"])


def _decode_vyper_auxdata(decoded, style):
    if style != AuxdataStyle.VYPER:
        return {"vyperVersion": _vyper_version(decoded)}

    # >= 0.4.1 prepends the integrity hash
    if len(decoded) == 5:
        integrity, runtime_size, data_sizes, immutable_size, version = decoded
        result = {"integrity": "0x" + integrity.hex()}
    else:
        runtime_size, data_sizes, immutable_size, version = decoded
        result = {}
    result.update({
        "runtimeSize": runtime_size,
        "dataSizes": list(data_sizes),
        "immutableSize": immutable_size,
        "vyperVersion": _vyper_version(version),
    })
    return result


def decode_auxdata(bytecode, style=AuxdataStyle.SOLIDITY):
    """Decode the CBOR trailer of a bytecode (or of a bare auxdata value)."""
    _, auxdata, _ = split_auxdata(bytecode, style)
    if auxdata is None:
        raise AuxdataDecodeError("Auxdata is not in the bytecode", "auxdata_not_found")
    decoded = _cbor_loads(auxdata)

    if style != AuxdataStyle.SOLIDITY:
        try:
            return _decode_vyper_auxdata(decoded, style)
        except (ValueError, TypeError, KeyError) as e:
            raise AuxdataDecodeError(f"Unexpected vyper auxdata layout: {e}", "auxdata_not_decodable")

    if not isinstance(decoded, dict):
        raise AuxdataDecodeError("Solidity auxdata is not a CBOR map", "auxdata_not_decodable")
    result = {}
    for key, value in decoded.items():
        if key == "ipfs":
            result["ipfs"] = base58.b58encode(value).decode()
        elif key == "solc":
            # nightly builds are string encoded
            if isinstance(value, str):
                result["solcVersion"] = value
            else:
                result["solcVersion"] = ".".join(str(b) for b in value)
        elif key == "experimental":
            result["experimental"] = value
        elif isinstance(value, bytes):
            result[key] = "0x" + value.hex()
        else:
            result[key] = value
    return result


def has_content_hash(decoded):
    return bool(decoded.get("ipfs") or decoded.get("bzzr0") or decoded.get("bzzr1"))


def ipfs_url(cid, gateway=None):
    gateway = gateway or get_ipfs_gateway()
    if not gateway.endswith("/"):
        gateway += "/"
    return gateway + cid
