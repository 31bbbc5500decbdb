"""Bytecodes and compiler outputs shared by the tests (solc 0.8.0, empty contract)."""

import json

AUX_PREFIX = "a2646970667358221220"
AUX_SUFFIX = "64736f6c63430008000033"
AUX_HASH = "dceca8706b29e917d2358f278d6f966d54639965254247559c551d740c883163"


def make_auxdata(ipfs_hash):
    return AUX_PREFIX + ipfs_hash + AUX_SUFFIX


AUX = make_auxdata(AUX_HASH)
# same envelope, different metadata hash
OTHER_AUX = make_auxdata("ab" * 32)
# {"solc": 0.8.0} only
AUX_WITHOUT_HASH = "a164736f6c6343000800000a"

RUNTIME_CODE = "6080604052600080fdfe"
CREATION_CODE = "6080604052348015600f57600080fd5b50603f80601d6000396000f3fe"

RUNTIME = "0x" + RUNTIME_CODE + AUX
CREATION = "0x" + CREATION_CODE + RUNTIME_CODE + AUX
RUNTIME_AUX_OFFSET = 10
CREATION_AUX_OFFSET = 39

SOURCE_PATH = "contracts/Test.sol"
CONTRACT_NAME = "Test"
SOLC_VERSION = "0.8.0+commit.c7dfd78e"
ADDRESS = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"

CONSTRUCTOR_ABI = [{"type": "constructor", "inputs": [{"name": "value", "type": "uint256"}],
                    "stateMutability": "nonpayable"}]


def legacy_assembly(*auxdatas):
    """Nested listing, one sub-assembly per auxdata, outermost first."""
    assembly = {".code": []}
    branch = assembly
    for auxdata in auxdatas:
        sub = {".auxdata": auxdata, ".code": []}
        branch[".data"] = {"0": sub}
        branch = sub
    return assembly


def json_input(content="contract Test {}"):
    return {
        "language": "Solidity",
        "sources": {SOURCE_PATH: {"content": content}},
        "settings": {"optimizer": {"enabled": False, "runs": 200}},
    }


def solidity_output(runtime=RUNTIME, creation=CREATION, auxdatas=(AUX,), settings=None, abi=None,
                    runtime_link_references=None, creation_link_references=None,
                    immutable_references=None, version=SOLC_VERSION):
    metadata = {
        "compiler": {"version": version},
        "language": "Solidity",
        "output": {"abi": abi or []},
        "settings": settings if settings is not None else {"optimizer": {"enabled": False, "runs": 200}},
        "sources": {SOURCE_PATH: {"keccak256": "0x00"}},
        "version": 1,
    }
    return {
        "contracts": {
            SOURCE_PATH: {
                CONTRACT_NAME: {
                    "abi": abi or [],
                    "metadata": json.dumps(metadata),
                    "evm": {
                        "legacyAssembly": legacy_assembly(*auxdatas),
                        "bytecode": {
                            "object": creation[2:],
                            "linkReferences": creation_link_references or {},
                        },
                        "deployedBytecode": {
                            "object": runtime[2:],
                            "linkReferences": runtime_link_references or {},
                            "immutableReferences": immutable_references or {},
                        },
                    },
                }
            }
        }
    }
