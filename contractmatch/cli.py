import argparse
import json
import logging
import sys

from .chain import Chain
from .compilation import Compilation, CompilationLanguage, CompilationTarget
from .compilers import SolcCompiler, VyperCompiler
from .config import get_config, set_rpc_timeout
from .errors import ContractMatchError
from .verification import Verification

logger = logging.getLogger(__name__)


def parse_contract(value):
    path, sep, name = value.rpartition(':')
    if not sep or not path or not name:
        raise argparse.ArgumentTypeError(f"Expected path:Name, got {value}")
    return CompilationTarget(path, name)


def build_parser():
    parser = argparse.ArgumentParser(description='Match a deployed contract against its recompiled sources')
    parser.add_argument('address', help='Address of the deployed contract')
    parser.add_argument('--rpc', action='append', required=True,
                        help='JSON-RPC endpoint, repeat to add fallbacks tried in order')
    parser.add_argument('--chain-id', type=int, required=True, help='Chain id of the RPC endpoints')
    parser.add_argument('--input', required=True, help='Path to the standard JSON compiler input')
    parser.add_argument('--compiler-version', required=True, help='e.g. 0.8.19+commit.7dd6d404')
    parser.add_argument('--contract', type=parse_contract, required=True, help='Compilation target as path:Name')
    parser.add_argument('--language', choices=['solidity', 'vyper'], default='solidity')
    parser.add_argument('--vyper-binary', help='vyper executable for --compiler-version')
    parser.add_argument('--creator-tx', help='Hash of the transaction that created the contract')
    parser.add_argument('--rpc-timeout', type=float, default=get_config().rpc_timeout,
                        help='Seconds before falling through to the next RPC')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log debug output')
    return parser


def build_compilation(args, json_input):
    if args.language == 'vyper':
        if not args.vyper_binary:
            raise ContractMatchError("--vyper-binary is required for vyper contracts", "compiler_error")
        compiler = VyperCompiler({args.compiler_version: args.vyper_binary})
        language = CompilationLanguage.VYPER
    else:
        compiler = SolcCompiler()
        language = CompilationLanguage.SOLIDITY
    return Compilation(compiler, args.compiler_version, json_input, args.contract, language)


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    set_rpc_timeout(args.rpc_timeout)

    with open(args.input) as f:
        json_input = json.load(f)

    try:
        chain = Chain(args.chain_id, args.rpc)
        compilation = build_compilation(args, json_input)
        result = Verification(compilation, chain, args.address, creator_tx_hash=args.creator_tx).verify()
    except ContractMatchError as e:
        logger.error("Verification failed: %s", e)
        print(json.dumps({'address': args.address, 'chainId': args.chain_id, 'error': e.code,
                          'message': str(e)}, indent=2))
        sys.exit(1)

    print(json.dumps(result.export(), indent=2))
    sys.exit(0 if result.matched else 1)


if __name__ == '__main__':
    main()
