"""
A single contract compilation, normalized across Solidity and Vyper.

`Compilation` is the same object for both languages; the language tag
selects the module (`solidity` or `vyper`) holding the rules that differ,
such as where the auxdata is, whether there are link references and how
immutables are laid out.
"""

import logging
import time
from collections import namedtuple
from enum import Enum

from . import solidity, vyper
from .bytecode import strip_0x
from .errors import CompilationError

logger = logging.getLogger(__name__)


class CompilationLanguage(Enum):
    SOLIDITY = "Solidity"
    VYPER = "Vyper"


LANGUAGE_RULES = {
    CompilationLanguage.SOLIDITY: solidity,
    CompilationLanguage.VYPER: vyper,
}

CompilationTarget = namedtuple("CompilationTarget", ["path", "name"])

CompilationArtifact = namedtuple("CompilationArtifact", [
    "language",
    "compilation_target",
    "metadata",
    "abi",
    "creation_bytecode",
    "runtime_bytecode",
    "creation_link_references",
    "runtime_link_references",
    "immutable_references",
    "auxdata_style",
])


class Compilation:
    def __init__(self, compiler, compiler_version, json_input, compilation_target,
                 language=CompilationLanguage.SOLIDITY):
        self.compiler = compiler
        self.compiler_version = compiler_version
        self.json_input = json_input
        self.compilation_target = compilation_target
        self.language = language
        self.rules = LANGUAGE_RULES[language]
        self.auxdata_style = self.rules.auxdata_style(compiler_version)
        self.rules.init_json_input(self.json_input, compilation_target)

        self.compiler_output = None
        self.artifact = None
        self._auxdata_positions = None

    def __repr__(self):
        return (f"Compilation({self.language.value} {self.compiler_version} "
                f"{self.compilation_target.path}:{self.compilation_target.name})")

    def compile(self, force_alternate_backend=False):
        """Compile the sources and build the artifact of the compilation target."""
        target = self.compilation_target
        logger.info("Compiling contract %s:%s with %s (alternate backend: %s)",
                    target.path, target.name, self.compiler_version, force_alternate_backend)
        logger.debug("Compilation input: %s", self.json_input)
        start = time.monotonic()

        # a new output invalidates previously located auxdatas
        self._auxdata_positions = None
        self.artifact = None
        try:
            self.compiler_output = self.compiler.compile(
                self.compiler_version, self.json_input, force_alternate_backend
            )
        except CompilationError:
            raise
        except Exception as e:
            logger.warning("Compiler error: %s", e)
            raise CompilationError(str(e), "compiler_error")

        if not self.compiler_output:
            logger.warning("Compiler error: compiler output is empty")
            raise CompilationError("Compiler output is empty", "no_compiler_output")

        contract = self.contract_output
        self.artifact = CompilationArtifact(
            language=self.language,
            compilation_target=target,
            metadata=self.rules.read_metadata(contract, self),
            abi=contract.get('abi', []),
            creation_bytecode=self.creation_bytecode,
            runtime_bytecode=self.runtime_bytecode,
            creation_link_references=self.rules.link_references(contract, creation=True),
            runtime_link_references=self.rules.link_references(contract, creation=False),
            immutable_references=self.rules.immutable_references(self),
            auxdata_style=self.auxdata_style,
        )
        logger.info("Compiled contract %s:%s in %.0fms", target.path, target.name,
                    (time.monotonic() - start) * 1000)
        return self.artifact

    @property
    def contract_output(self):
        if not self.compiler_output:
            raise CompilationError("Compiler output is empty", "no_compiler_output")
        target = self.compilation_target
        contract = self.compiler_output.get('contracts', {}).get(target.path, {}).get(target.name)
        if not contract:
            logger.warning("Contract %s:%s not found in compiler output", target.path, target.name)
            raise CompilationError(f"Contract {target.path}:{target.name} not found in compiler output",
                                   "contract_not_found_in_compiler_output")
        return contract

    def _compiled(self):
        if self.artifact is None:
            self.compile()
        return self.artifact

    # The two bytecode properties read the raw output so the language rules
    # can use them while the artifact is being built.
    @property
    def creation_bytecode(self):
        return '0x' + strip_0x(self.contract_output['evm']['bytecode']['object'])

    @property
    def runtime_bytecode(self):
        return '0x' + strip_0x(self.contract_output['evm']['deployedBytecode']['object'])

    @property
    def metadata(self):
        if self.artifact is None:
            raise CompilationError("Metadata is not set, compile first", "metadata_not_set")
        return self.artifact.metadata

    @property
    def abi(self):
        return self._compiled().abi

    @property
    def immutable_references(self):
        return self._compiled().immutable_references

    @property
    def creation_link_references(self):
        return self._compiled().creation_link_references

    @property
    def runtime_link_references(self):
        return self._compiled().runtime_link_references

    @property
    def sources(self):
        return {path: source['content'] for path, source in self.json_input['sources'].items()}

    @property
    def settings(self):
        if self.artifact is not None:
            return self.artifact.metadata.get('settings', {})
        return self.json_input.get('settings', {})

    @property
    def optimizer_enabled(self):
        return bool((self.settings.get('optimizer') or {}).get('enabled'))

    @property
    def via_ir(self):
        return bool(self.settings.get('viaIR'))

    def generate_cbor_auxdata_positions(self, force_alternate_backend=False):
        """
        Locate the auxdatas of the runtime and creation bytecode.

        Computed once per compile; failing to locate them is a soft error,
        matching then works on exact bytecodes only.
        """
        if self._auxdata_positions is not None:
            return self._auxdata_positions
        self._compiled()
        try:
            runtime, creation = self.rules.generate_auxdata_positions(self, force_alternate_backend)
        except Exception as e:
            logger.warning("Cannot generate cbor auxdata positions for %r: %s", self, e)
            raise CompilationError(f"Cannot generate cbor auxdata positions: {e}",
                                   "cannot_generate_cbor_auxdata_positions")
        self._auxdata_positions = runtime, creation
        return runtime, creation

    @property
    def runtime_bytecode_cbor_auxdata(self):
        return self.generate_cbor_auxdata_positions()[0]

    @property
    def creation_bytecode_cbor_auxdata(self):
        return self.generate_cbor_auxdata_positions()[1]
