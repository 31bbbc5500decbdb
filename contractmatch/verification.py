"""
Verification of one deployed contract against one compilation.

`Verification.verify()` walks a fixed sequence of steps: fetch the deployed
runtime code, compile, optionally recover the exact metadata, check the
length, locate the auxdatas, match the runtime code and, when the creation
transaction is known, match the creation code too. Each step takes the
`VerificationResult` built so far and returns an updated copy.
"""

import difflib
import logging
from dataclasses import dataclass, replace

from evmdasm import EvmBytecode

from .bytecode import AuxdataStyle, byte_length, decode_auxdata, ipfs_url, normalize_hex, split_auxdata, strip_0x
from .compilation import CompilationLanguage
from .compilers import version_tuple
from .errors import AuxdataDecodeError, ChainError, CompilationError, VerificationError
from .matcher import MatchStatus, match_creation_bytecode, match_runtime_bytecode

logger = logging.getLogger(__name__)

# solc emitted functions in a nondeterministic order with viaIR and no optimizer
IR_ORDERING_FIXED_VERSION = (0, 8, 21)

EXTRA_FILE_INPUT_BUG_MESSAGE = (
    "It seems your contract's metadata hashes match but not the bytecodes. You should add all the "
    "files input to the compiler during compilation and remove all others. "
    "See https://github.com/ethereum/sourcify/issues/618"
)


@dataclass(frozen=True)
class VerificationResult:
    address: str
    chain_id: int
    onchain_runtime_bytecode: str = None
    onchain_creation_bytecode: str = None
    recompiled_runtime_bytecode: str = None
    recompiled_creation_bytecode: str = None
    runtime_match: object = None
    creation_match: object = None
    block_number: int = None
    tx_index: int = None
    deployer: str = None
    tx_hash: str = None
    compilation: object = None

    @property
    def runtime_status(self):
        return self.runtime_match.status if self.runtime_match else MatchStatus.NONE

    @property
    def creation_status(self):
        return self.creation_match.status if self.creation_match else MatchStatus.NONE

    @property
    def matched(self):
        return self.runtime_status.matched or self.creation_status.matched

    @property
    def library_map(self):
        library_map = {}
        for match in (self.runtime_match, self.creation_match):
            if match and match.status.matched:
                library_map.update(match.library_map)
        return library_map

    @property
    def onchain_metadata_url(self):
        """Gateway URL of the metadata the deployed runtime code commits to, if it is on IPFS."""
        if not self.onchain_runtime_bytecode:
            return None
        try:
            decoded = decode_auxdata(self.onchain_runtime_bytecode, AuxdataStyle.SOLIDITY)
        except AuxdataDecodeError:
            return None
        if not decoded.get("ipfs"):
            return None
        return ipfs_url(decoded["ipfs"])

    def export(self):
        """Serializable snapshot. Offsets are in bytes, bytecodes are 0x lowercase hex."""
        return {
            "address": self.address,
            "chainId": self.chain_id,
            "status": {
                "runtimeMatch": _export_status(self.runtime_status),
                "creationMatch": _export_status(self.creation_status),
            },
            "onchainRuntimeBytecode": self.onchain_runtime_bytecode,
            "onchainCreationBytecode": self.onchain_creation_bytecode,
            "recompiledRuntimeBytecode": self.recompiled_runtime_bytecode,
            "recompiledCreationBytecode": self.recompiled_creation_bytecode,
            "transformations": {
                "runtime": _export_match(self.runtime_match),
                "creation": _export_match(self.creation_match),
            },
            "deploymentInfo": {
                "blockNumber": self.block_number,
                "txIndex": self.tx_index,
                "deployer": self.deployer,
                "txHash": self.tx_hash,
            },
            "libraryMap": self.library_map,
            "onchainMetadataUrl": self.onchain_metadata_url,
            "compilation": _export_compilation(self.compilation),
        }


def _export_status(status):
    return status.value if status.matched else None


def _export_match(match):
    if not match or not match.status.matched:
        return {"list": [], "values": {}}
    return {
        "list": [transformation.to_dict() for transformation in match.transformations],
        "values": match.values.to_dict(),
    }


def _export_compilation(compilation):
    if compilation is None:
        return None
    return {
        "language": compilation.language.value,
        "compilerVersion": compilation.compiler_version,
        "compilationTarget": {
            "path": compilation.compilation_target.path,
            "name": compilation.compilation_target.name,
        },
    }


def _parse_quantity(value):
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16)
    return value


def opcode_diff(compiled, deployed):
    """Unified diff of the two disassemblies."""
    compiled_opcodes = EvmBytecode(bytes.fromhex(strip_0x(compiled))).disassemble()
    compiled_disassembly = [f"{op.name} {op.operand if op.operand else ''}" for op in compiled_opcodes]

    deployed_opcodes = EvmBytecode(bytes.fromhex(strip_0x(deployed))).disassemble()
    deployed_disassembly = [f"{op.name} {op.operand if op.operand else ''}" for op in deployed_opcodes]

    return difflib.unified_diff(
        compiled_disassembly,
        deployed_disassembly,
        fromfile='compiled_disassembly',
        tofile='deployed_disassembly',
        lineterm='',
    )


class Verification:
    def __init__(self, compilation, chain, address, creator_tx_hash=None, metadata_recovery=None):
        self.compilation = compilation
        self.chain = chain
        self.address = address
        self.creator_tx_hash = creator_tx_hash
        self.metadata_recovery = metadata_recovery

    def verify(self):
        logger.info("Verifying contract %s on chain %s", self.address, self.chain.chain_id)
        result = VerificationResult(self.address, self.chain.chain_id, tx_hash=self.creator_tx_hash)
        result = self.fetch_onchain_runtime(result)

        force_alternate_backend = False
        creation_positions = None
        # at most one retry, with the alternate compiler backend forced
        for _ in range(2):
            result = self.compile(result, force_alternate_backend)
            result = self.recover_perfect_metadata(result, force_alternate_backend)
            self.check_length(result)
            runtime_positions, creation_positions = self.locate_auxdatas(force_alternate_backend)
            result = self.match_runtime(result, runtime_positions)
            if result.runtime_status.matched:
                break
            if not force_alternate_backend and self.has_ir_ordering_bug():
                logger.info("Forcing the alternate compiler backend for %s on chain %s",
                            self.address, self.chain.chain_id)
                force_alternate_backend = True
                continue
            self.check_extra_file_input_bug(result)
            break

        if self.creator_tx_hash:
            result = self.resolve_creation_tx(result)
            result = self.match_creation(result, creation_positions)

        if not result.matched:
            self.log_opcode_diff(result)
            raise VerificationError("The deployed and recompiled bytecode don't match.", "no_match")

        logger.info("Verified contract %s on chain %s: runtime %s, creation %s", self.address,
                    self.chain.chain_id, result.runtime_status.value, result.creation_status.value)
        return result

    def fetch_onchain_runtime(self, result):
        try:
            bytecode = self.chain.get_bytecode(self.address)
        except ChainError as e:
            if e.code == "invalid_address":
                raise
            logger.warning("Cannot fetch bytecode of %s: %s", self.address, e)
            raise VerificationError(f"Chain #{self.chain.chain_id} is temporarily unavailable",
                                    "cannot_fetch_bytecode")
        if not bytecode:
            raise VerificationError(f"Chain #{self.chain.chain_id} returned no bytecode for {self.address}",
                                    "onchain_runtime_bytecode_not_available")
        bytecode = normalize_hex(bytecode)
        if bytecode == "0x":
            raise VerificationError(
                f"Chain #{self.chain.chain_id} does not have a contract deployed at {self.address}",
                "contract_not_deployed",
            )
        return replace(result, onchain_runtime_bytecode=bytecode)

    def compile(self, result, force_alternate_backend=False):
        self.compilation.compile(force_alternate_backend)
        runtime = self.compilation.runtime_bytecode
        creation = self.compilation.creation_bytecode
        if runtime == "0x" or creation == "0x":
            raise VerificationError(
                'The compiled contract bytecode is "0x". Are you trying to verify an abstract contract?',
                "compiled_bytecode_is_zero",
            )
        return replace(result, recompiled_runtime_bytecode=runtime, recompiled_creation_bytecode=creation,
                       compilation=self.compilation)

    def recover_perfect_metadata(self, result, force_alternate_backend=False):
        """Swap in a compilation whose metadata hash is exactly the deployed one, when one can be found."""
        if self.metadata_recovery is None or self.compilation.language != CompilationLanguage.SOLIDITY:
            return result
        _, onchain_auxdata, _ = split_auxdata(result.onchain_runtime_bytecode, AuxdataStyle.SOLIDITY)
        _, recompiled_auxdata, _ = split_auxdata(result.recompiled_runtime_bytecode, AuxdataStyle.SOLIDITY)
        if onchain_auxdata is None or onchain_auxdata == recompiled_auxdata:
            return result

        recovered = self.metadata_recovery.find_perfect_metadata(self.compilation, result.onchain_runtime_bytecode)
        if recovered is None:
            logger.debug("No perfect metadata found for %s", self.address)
            return result
        logger.info("Recovered the exact metadata of %s, recompiling", self.address)
        self.compilation = recovered
        return self.compile(result, force_alternate_backend)

    def check_length(self, result):
        onchain_length = byte_length(result.onchain_runtime_bytecode)
        recompiled_length = byte_length(result.recompiled_runtime_bytecode)
        if self.compilation.language == CompilationLanguage.VYPER:
            # immutables are appended after the runtime code at deploy time
            mismatch = recompiled_length > onchain_length
        else:
            mismatch = recompiled_length != onchain_length
        if not mismatch:
            return
        self.check_extra_file_input_bug(result)
        raise VerificationError(
            f"The recompiled bytecode length ({recompiled_length}) differs from the "
            f"on-chain bytecode length ({onchain_length})",
            "bytecode_length_mismatch",
        )

    def check_extra_file_input_bug(self, result):
        """Unused files in the compiler input can change the code but not the metadata hash."""
        if self.compilation.language != CompilationLanguage.SOLIDITY or not self.compilation.optimizer_enabled:
            return
        _, onchain_auxdata, _ = split_auxdata(result.onchain_runtime_bytecode, AuxdataStyle.SOLIDITY)
        _, recompiled_auxdata, _ = split_auxdata(result.recompiled_runtime_bytecode, AuxdataStyle.SOLIDITY)
        if onchain_auxdata is not None and onchain_auxdata == recompiled_auxdata:
            logger.warning("Metadata hashes of %s match but the bytecodes don't", self.address)
            raise VerificationError(EXTRA_FILE_INPUT_BUG_MESSAGE, "extra_file_input_bug")

    def has_ir_ordering_bug(self):
        compilation = self.compilation
        if compilation.language != CompilationLanguage.SOLIDITY:
            return False
        return (
            version_tuple(compilation.compiler_version) < IR_ORDERING_FIXED_VERSION
            and not compilation.optimizer_enabled
            and compilation.via_ir
        )

    def locate_auxdatas(self, force_alternate_backend=False):
        """(runtime, creation) positions, both None when they cannot be located."""
        try:
            return self.compilation.generate_cbor_auxdata_positions(force_alternate_backend)
        except CompilationError as e:
            logger.warning("Matching %s without auxdata positions: %s", self.address, e)
            return None, None

    def match_runtime(self, result, runtime_positions):
        logger.debug("Matching with deployed bytecode of %s", self.address)
        match = match_runtime_bytecode(
            result.recompiled_runtime_bytecode,
            result.onchain_runtime_bytecode,
            self.compilation.runtime_link_references,
            runtime_positions,
            immutable_references=self.compilation.immutable_references,
            auxdata_style=self.compilation.auxdata_style,
        )
        logger.debug("Runtime match of %s: %s", self.address, match.status.value)
        return replace(result, runtime_match=match)

    def resolve_creation_tx(self, result):
        try:
            creator_tx = self.chain.get_tx(self.creator_tx_hash)
        except ChainError as e:
            raise VerificationError(f"Cannot fetch creation tx {self.creator_tx_hash}: {e}",
                                    "cannot_fetch_creation_tx")
        try:
            creation_bytecode, receipt = self.chain.get_contract_creation_bytecode_and_receipt(
                self.address, self.creator_tx_hash, creator_tx
            )
        except ChainError as e:
            logger.warning("Cannot get the creation bytecode of %s: %s", self.address, e)
            raise VerificationError(f"Cannot get the creation bytecode of {self.address}: {e}",
                                    "onchain_creation_bytecode_not_available")
        return replace(
            result,
            onchain_creation_bytecode=normalize_hex(creation_bytecode),
            block_number=_parse_quantity(creator_tx.get("blockNumber")),
            deployer=creator_tx.get("from"),
            tx_index=_parse_quantity(receipt.get("transactionIndex")),
        )

    def match_creation(self, result, creation_positions):
        logger.debug("Matching with creation tx %s of %s", self.creator_tx_hash, self.address)
        match = match_creation_bytecode(
            result.recompiled_creation_bytecode,
            result.onchain_creation_bytecode,
            self.compilation.creation_link_references,
            creation_positions,
            self.compilation.abi,
            auxdata_style=self.compilation.auxdata_style,
        )
        logger.debug("Creation match of %s: %s", self.address, match.status.value)
        return replace(result, creation_match=match)

    def log_opcode_diff(self, result):
        if not logger.isEnabledFor(logging.DEBUG):
            return
        try:
            diff = opcode_diff(result.recompiled_runtime_bytecode, result.onchain_runtime_bytecode)
            logger.debug("Opcode diff of %s:\n%s", self.address, '\n'.join(diff))
        except Exception as e:
            logger.debug("Could not generate opcode diff: %s", e)
