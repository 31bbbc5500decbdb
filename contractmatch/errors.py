"""Error types raised while compiling, fetching and matching bytecode."""


class ContractMatchError(Exception):
    """Base error carrying a machine readable code next to the message."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code or message

    def __str__(self):
        message = super().__str__()
        if message == self.code:
            return message
        return f"{message} ({self.code})"


class CompilationError(ContractMatchError):
    """Codes: compiler_error, no_compiler_output, contract_not_found_in_compiler_output,
    invalid_compiler_version, metadata_not_set, cannot_generate_cbor_auxdata_positions."""


class VerificationError(ContractMatchError):
    """Codes: cannot_fetch_bytecode, contract_not_deployed, compiled_bytecode_is_zero,
    bytecode_length_mismatch, extra_file_input_bug, cannot_fetch_creation_tx, onchain_runtime_bytecode_not_available,
    onchain_creation_bytecode_not_available, no_match."""


class ChainError(ContractMatchError):
    """Codes: no_rpc, missing_api_key, invalid_address, rpc_error, not_found, rpc_unavailable,
    no_trace_support, malformed_traces, wrong_creation_tx."""


class AuxdataDecodeError(ContractMatchError):
    pass


class BytecodeStructureError(ContractMatchError):
    """Malformed input. Never retried and never downgraded to a mismatch."""


class LibraryPlaceholderError(BytecodeStructureError):
    def __init__(self, message):
        super().__init__(message, "library_placeholder_mismatch")


class ConstructorArgumentsError(BytecodeStructureError):
    def __init__(self, message):
        super().__init__(message, "constructor_arguments_mismatch")


class RegionMismatchError(ContractMatchError):
    """The on-chain bytecode cannot fill a region of the recompiled one. Matching reports it as none."""

    def __init__(self, message):
        super().__init__(message, "region_mismatch")
