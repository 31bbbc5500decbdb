"""Compiler collaborators: solc through py-solc-x and vyper as a subprocess."""

import json
import logging
import re
import subprocess

import solcx
from solcx.exceptions import SolcError

from .errors import CompilationError

logger = logging.getLogger(__name__)


def normalize_version(compiler_version):
    """'v0.8.19+commit.7dd6d404' -> '0.8.19'"""
    if compiler_version.startswith('v'):
        compiler_version = compiler_version[1:]
    if '+' in compiler_version:
        compiler_version = compiler_version.split('+')[0]
    if '-' in compiler_version:
        compiler_version = compiler_version.split('-')[0]
    return compiler_version


def version_tuple(compiler_version):
    """Numeric (major, minor, patch), ignoring pre-release suffixes like b1 or rc2."""
    match = re.match(r'^(\d+)\.(\d+)\.(\d+)', normalize_version(compiler_version))
    if not match:
        raise CompilationError(f"Invalid compiler version {compiler_version}", "invalid_compiler_version")
    return tuple(int(part) for part in match.groups())


class SolcCompiler:
    """
    Runs solc standard JSON compilations.

    `alternate_binaries` maps a version to a second solc build (e.g. the
    emscripten/wasm one wrapped in an executable). It is only used when a
    compilation forces the alternate backend.
    """

    def __init__(self, alternate_binaries=None):
        self.alternate_binaries = alternate_binaries or {}

    def compile(self, version, json_input, force_alternate_backend=False):
        version = normalize_version(version)
        compile_kwargs = {}
        if force_alternate_backend:
            binary = self.alternate_binaries.get(version)
            if not binary:
                raise CompilationError(
                    f"No alternate solc backend configured for {version}", "compiler_error"
                )
            compile_kwargs['solc_binary'] = binary
        else:
            try:
                logger.info("Installing and setting solc version: %s", version)
                solcx.install_solc(version)
            except Exception as e:
                raise CompilationError(f"Failed to install solc version {version}. Error: {e}", "compiler_error")
            compile_kwargs['solc_version'] = version

        try:
            return solcx.compile_standard(json_input, **compile_kwargs)
        except SolcError as e:
            logger.warning("Compilation failed: %s", e)
            raise CompilationError(f"Compilation failed: {e}", "compiler_error")


class VyperCompiler:
    """Runs `vyper --standard-json`, one executable per compiler version."""

    def __init__(self, binaries):
        self.binaries = binaries

    def compile(self, version, json_input, force_alternate_backend=False):
        binary = self.binaries.get(version) or self.binaries.get(normalize_version(version))
        if not binary:
            raise CompilationError(f"No vyper executable configured for {version}", "compiler_error")

        logger.debug("Running %s --standard-json", binary)
        process = subprocess.run(
            [binary, '--standard-json'],
            input=json.dumps(json_input).encode('utf-8'),
            capture_output=True,
        )
        if process.returncode:
            raise CompilationError(
                f"Failed to run {binary}, exit code {process.returncode}: {process.stderr.decode(errors='replace')}",
                "compiler_error",
            )

        output = json.loads(process.stdout)
        for error in output.get('errors', []):
            # warnings are reported in the same list
            if error.get('severity') == 'error':
                raise CompilationError(
                    f"{binary} had an error:\n{error.get('formattedMessage', error.get('message'))}",
                    "compiler_error",
                )
        return output
