from .chain import Chain
from .compilation import Compilation, CompilationLanguage, CompilationTarget
from .compilers import SolcCompiler, VyperCompiler
from .config import Config, get_config, set_config
from .errors import (
    AuxdataDecodeError,
    BytecodeStructureError,
    ChainError,
    CompilationError,
    ConstructorArgumentsError,
    ContractMatchError,
    LibraryPlaceholderError,
    VerificationError,
)
from .matcher import MatchResult, MatchStatus, match_bytecodes
from .transformations import Transformation, TransformationValues, apply_transformations
from .verification import Verification, VerificationResult

__version__ = "0.1.0"
