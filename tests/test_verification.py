import unittest
from unittest.mock import ANY, MagicMock, call
import sys
import os

import cbor2
from eth_abi import encode as abi_encode

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from contractmatch.compilation import Compilation, CompilationLanguage, CompilationTarget
from contractmatch.errors import ChainError, ConstructorArgumentsError, VerificationError
from contractmatch.matcher import MatchStatus
from contractmatch.verification import Verification, opcode_diff

from bytecode_fixtures import (
    ADDRESS,
    AUX,
    CONSTRUCTOR_ABI,
    CONTRACT_NAME,
    CREATION,
    CREATION_CODE,
    OTHER_AUX,
    RUNTIME,
    RUNTIME_CODE,
    SOLC_VERSION,
    SOURCE_PATH,
    json_input,
    solidity_output,
)

TARGET = CompilationTarget(SOURCE_PATH, CONTRACT_NAME)
TX_HASH = "0x" + "ab" * 32
DEPLOYER = "0x" + "de" * 20
# same length as RUNTIME, one opcode differs
TAMPERED_RUNTIME = "0x6080604052600080fd00" + AUX


def make_chain(runtime=RUNTIME):
    chain = MagicMock()
    chain.chain_id = 1
    chain.get_bytecode.return_value = runtime
    return chain


def make_compilation(*outputs, version=SOLC_VERSION):
    compiler = MagicMock()
    compiler.compile.side_effect = list(outputs)
    return Compilation(compiler, version, json_input(), TARGET), compiler


class TestVerification(unittest.TestCase):
    def test_perfect_runtime_match(self):
        compilation, _ = make_compilation(solidity_output())

        result = Verification(compilation, make_chain(), ADDRESS).verify()

        self.assertEqual(result.runtime_status, MatchStatus.PERFECT)
        self.assertEqual(result.creation_status, MatchStatus.NONE)
        exported = result.export()
        self.assertEqual(exported["status"], {"runtimeMatch": "perfect", "creationMatch": None})
        self.assertEqual(exported["transformations"]["runtime"], {"list": [], "values": {}})
        self.assertEqual(exported["onchainRuntimeBytecode"], RUNTIME)
        self.assertEqual(exported["recompiledRuntimeBytecode"], RUNTIME)
        self.assertEqual(exported["compilation"]["compilationTarget"],
                         {"path": SOURCE_PATH, "name": CONTRACT_NAME})
        self.assertTrue(exported["onchainMetadataUrl"].startswith("https://ipfs.io/ipfs/Qm"))

    def test_partial_runtime_match(self):
        onchain = "0x" + RUNTIME_CODE + OTHER_AUX
        compilation, _ = make_compilation(solidity_output())

        result = Verification(compilation, make_chain(onchain), ADDRESS).verify()

        self.assertEqual(result.export()["transformations"]["runtime"], {
            "list": [{"type": "replace", "reason": "cborAuxdata", "offset": 10, "id": "1"}],
            "values": {"cborAuxdata": {"1": "0x" + OTHER_AUX}},
        })
        self.assertEqual(result.runtime_status, MatchStatus.PARTIAL)

    def test_metadata_disabled(self):
        bytecode = "0x" + RUNTIME_CODE
        compilation, _ = make_compilation(
            solidity_output(runtime=bytecode, creation="0x" + CREATION_CODE + RUNTIME_CODE, auxdatas=())
        )
        result = Verification(compilation, make_chain(bytecode), ADDRESS).verify()
        self.assertEqual(result.runtime_status, MatchStatus.PARTIAL)
        self.assertIsNone(result.export()["onchainMetadataUrl"])

    def test_unlocatable_auxdata_is_bypassed(self):
        # the listing reports an auxdata that is not in the bytecode
        compilation, _ = make_compilation(solidity_output(auxdatas=(OTHER_AUX,)))
        result = Verification(compilation, make_chain(), ADDRESS).verify()
        self.assertEqual(result.runtime_status, MatchStatus.PARTIAL)

    def test_cannot_fetch_bytecode(self):
        chain = make_chain()
        chain.get_bytecode.side_effect = ChainError("down", "rpc_unavailable")
        compilation, compiler = make_compilation(solidity_output())
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, chain, ADDRESS).verify()
        self.assertEqual(cm.exception.code, "cannot_fetch_bytecode")
        compiler.compile.assert_not_called()

    def test_invalid_address_is_not_reported_as_unavailable(self):
        chain = make_chain()
        chain.get_bytecode.side_effect = ChainError("Invalid address 0x1234", "invalid_address")
        compilation, _ = make_compilation(solidity_output())
        with self.assertRaises(ChainError) as cm:
            Verification(compilation, chain, "0x1234").verify()
        self.assertEqual(cm.exception.code, "invalid_address")

    def test_contract_not_deployed(self):
        compilation, _ = make_compilation(solidity_output())
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain("0x"), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "contract_not_deployed")

    def test_abstract_contract(self):
        compilation, _ = make_compilation(solidity_output(runtime="0x", creation="0x", auxdatas=()))
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain(), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "compiled_bytecode_is_zero")

    def test_shorter_onchain_bytecode(self):
        compilation, compiler = make_compilation(solidity_output())
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain(RUNTIME[:-2]), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "bytecode_length_mismatch")
        # no edited recompilation to relax the auxdata
        compiler.compile.assert_called_once()

    def test_extra_file_input_bug(self):
        settings = {"optimizer": {"enabled": True, "runs": 200}}
        compilation, _ = make_compilation(solidity_output(settings=settings))
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain(TAMPERED_RUNTIME), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "extra_file_input_bug")

    def test_no_match(self):
        compilation, _ = make_compilation(solidity_output())
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain(TAMPERED_RUNTIME), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "no_match")


class TestIrOrderingRetry(unittest.TestCase):
    VERSION = "0.8.19+commit.7dd6d404"
    SETTINGS = {"optimizer": {"enabled": False, "runs": 200}, "viaIR": True}

    def test_retry_with_alternate_backend(self):
        compilation, compiler = make_compilation(
            solidity_output(runtime=TAMPERED_RUNTIME, settings=self.SETTINGS, version=self.VERSION),
            solidity_output(settings=self.SETTINGS, version=self.VERSION),
            version=self.VERSION,
        )

        result = Verification(compilation, make_chain(), ADDRESS).verify()

        self.assertEqual(result.runtime_status, MatchStatus.PERFECT)
        self.assertEqual(compiler.compile.call_args_list, [
            call(self.VERSION, ANY, False),
            call(self.VERSION, ANY, True),
        ])

    def test_retried_only_once(self):
        compilation, compiler = make_compilation(
            solidity_output(runtime=TAMPERED_RUNTIME, settings=self.SETTINGS, version=self.VERSION),
            solidity_output(runtime=TAMPERED_RUNTIME, settings=self.SETTINGS, version=self.VERSION),
            version=self.VERSION,
        )
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain(), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "no_match")
        self.assertEqual(compiler.compile.call_count, 2)

    def test_fixed_compiler_is_not_retried(self):
        version = "0.8.21+commit.d9974bed"
        compilation, compiler = make_compilation(
            solidity_output(runtime=TAMPERED_RUNTIME, settings=self.SETTINGS, version=version),
            version=version,
        )
        with self.assertRaises(VerificationError):
            Verification(compilation, make_chain(), ADDRESS).verify()
        compiler.compile.assert_called_once()


class TestCreationMatch(unittest.TestCase):
    def make_chain(self, creation):
        chain = make_chain()
        chain.get_tx.return_value = {"input": creation, "from": DEPLOYER, "blockNumber": "0x10"}
        chain.get_contract_creation_bytecode_and_receipt.return_value = (creation, {"transactionIndex": "0x2"})
        return chain

    def test_constructor_arguments(self):
        encoded = abi_encode(["uint256"], [12345]).hex()
        compilation, _ = make_compilation(solidity_output(abi=CONSTRUCTOR_ABI))
        chain = self.make_chain(CREATION + encoded)

        result = Verification(compilation, chain, ADDRESS, creator_tx_hash=TX_HASH).verify()

        exported = result.export()
        self.assertEqual(exported["status"], {"runtimeMatch": "perfect", "creationMatch": "perfect"})
        self.assertEqual(exported["transformations"]["creation"]["list"],
                         [{"type": "insert", "reason": "constructorArguments", "offset": 92}])
        self.assertEqual(exported["transformations"]["creation"]["values"], {"constructorArguments": "0x" + encoded})
        self.assertEqual(exported["deploymentInfo"],
                         {"blockNumber": 16, "txIndex": 2, "deployer": DEPLOYER, "txHash": TX_HASH})
        self.assertEqual(exported["onchainCreationBytecode"], CREATION + encoded)
        chain.get_contract_creation_bytecode_and_receipt.assert_called_once_with(
            ADDRESS, TX_HASH, chain.get_tx.return_value
        )

    def test_statuses_are_independent(self):
        onchain_creation = "0x" + CREATION_CODE + RUNTIME_CODE + OTHER_AUX
        compilation, _ = make_compilation(solidity_output())

        result = Verification(compilation, self.make_chain(onchain_creation), ADDRESS,
                              creator_tx_hash=TX_HASH).verify()

        self.assertEqual(result.runtime_status, MatchStatus.PERFECT)
        self.assertEqual(result.creation_status, MatchStatus.PARTIAL)

    def test_creation_match_alone_is_success(self):
        onchain_runtime = "0x" + RUNTIME_CODE + OTHER_AUX
        compilation, _ = make_compilation(solidity_output(runtime=TAMPERED_RUNTIME))
        chain = self.make_chain(CREATION)
        chain.get_bytecode.return_value = onchain_runtime

        result = Verification(compilation, chain, ADDRESS, creator_tx_hash=TX_HASH).verify()

        self.assertEqual(result.export()["status"], {"runtimeMatch": None, "creationMatch": "perfect"})

    def test_creation_bytecode_unavailable(self):
        chain = self.make_chain(CREATION)
        chain.get_contract_creation_bytecode_and_receipt.side_effect = ChainError("no traces", "no_trace_support")
        compilation, _ = make_compilation(solidity_output())
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, chain, ADDRESS, creator_tx_hash=TX_HASH).verify()
        self.assertEqual(cm.exception.code, "onchain_creation_bytecode_not_available")

    def test_creation_tx_unavailable(self):
        chain = self.make_chain(CREATION)
        chain.get_tx.side_effect = ChainError("down", "rpc_unavailable")
        compilation, _ = make_compilation(solidity_output())
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, chain, ADDRESS, creator_tx_hash=TX_HASH).verify()
        self.assertEqual(cm.exception.code, "cannot_fetch_creation_tx")

    def test_undecodable_constructor_arguments_propagate(self):
        compilation, _ = make_compilation(solidity_output())
        chain = self.make_chain(CREATION + "00" * 32)
        with self.assertRaises(ConstructorArgumentsError):
            Verification(compilation, chain, ADDRESS, creator_tx_hash=TX_HASH).verify()


class TestPerfectMetadataRecovery(unittest.TestCase):
    def test_recovered_compilation_replaces_the_original(self):
        onchain = "0x" + RUNTIME_CODE + OTHER_AUX
        compilation, _ = make_compilation(solidity_output())
        recovered, _ = make_compilation(solidity_output(
            runtime=onchain, creation="0x" + CREATION_CODE + onchain[2:], auxdatas=(OTHER_AUX,)
        ))
        recovery = MagicMock()
        recovery.find_perfect_metadata.return_value = recovered

        result = Verification(compilation, make_chain(onchain), ADDRESS, metadata_recovery=recovery).verify()

        self.assertEqual(result.runtime_status, MatchStatus.PERFECT)
        self.assertIs(result.compilation, recovered)
        recovery.find_perfect_metadata.assert_called_once_with(compilation, onchain)

    def test_nothing_recovered(self):
        onchain = "0x" + RUNTIME_CODE + OTHER_AUX
        compilation, _ = make_compilation(solidity_output())
        recovery = MagicMock()
        recovery.find_perfect_metadata.return_value = None

        result = Verification(compilation, make_chain(onchain), ADDRESS, metadata_recovery=recovery).verify()

        self.assertEqual(result.runtime_status, MatchStatus.PARTIAL)
        self.assertIs(result.compilation, compilation)

    def test_not_attempted_when_auxdata_matches(self):
        compilation, _ = make_compilation(solidity_output())
        recovery = MagicMock()
        Verification(compilation, make_chain(), ADDRESS, metadata_recovery=recovery).verify()
        recovery.find_perfect_metadata.assert_not_called()


class TestVyperVerification(unittest.TestCase):
    RUNTIME = "0x600160005500"

    def test_immutables_appended_on_chain(self):
        cbor_hex = cbor2.dumps([6, [], 32, {"vyper": [0, 3, 10]}]).hex()
        creation = "0x61000b" + self.RUNTIME[2:] + cbor_hex + format(len(cbor_hex) // 2 + 2, "04x")
        output = {"contracts": {"Test.vy": {"Test": {
            "abi": [],
            "evm": {"bytecode": {"object": creation}, "deployedBytecode": {"object": self.RUNTIME}},
        }}}}
        compiler = MagicMock()
        compiler.compile.return_value = output
        compilation = Compilation(
            compiler, "0.3.10", {"sources": {"Test.vy": {"content": "x: immutable(uint256)"}}},
            CompilationTarget("Test.vy", "Test"), CompilationLanguage.VYPER,
        )
        onchain = self.RUNTIME + "cd" * 32

        result = Verification(compilation, make_chain(onchain), ADDRESS).verify()

        self.assertEqual(result.runtime_status, MatchStatus.PARTIAL)
        self.assertEqual(result.export()["transformations"]["runtime"], {
            "list": [{"type": "insert", "reason": "immutable", "offset": 6, "id": "0"}],
            "values": {"immutables": {"0": "0x" + "cd" * 32}},
        })

    def test_longer_recompiled_bytecode(self):
        output = {"contracts": {"Test.vy": {"Test": {
            "abi": [],
            "evm": {"bytecode": {"object": "0x61000b" + self.RUNTIME[2:]}, "deployedBytecode": {"object": self.RUNTIME}},
        }}}}
        compiler = MagicMock()
        compiler.compile.return_value = output
        compilation = Compilation(compiler, "0.3.10", {"sources": {"Test.vy": {"content": ""}}},
                                  CompilationTarget("Test.vy", "Test"), CompilationLanguage.VYPER)
        with self.assertRaises(VerificationError) as cm:
            Verification(compilation, make_chain("0x6001"), ADDRESS).verify()
        self.assertEqual(cm.exception.code, "bytecode_length_mismatch")


class TestOpcodeDiff(unittest.TestCase):
    def test_diff(self):
        lines = list(opcode_diff("0x600100", "0x600200"))
        self.assertTrue(any(line.startswith("-PUSH1") for line in lines))
        self.assertTrue(any(line.startswith("+PUSH1") for line in lines))


if __name__ == '__main__':
    unittest.main()
