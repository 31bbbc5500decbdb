"""
JSON-RPC access to a chain.

Providers are tried one after another; each request is bounded by the RPC
timeout and any failure falls through to the next provider. Only when every
provider failed does the call raise a ChainError.
"""

import json
import logging
import time

import requests
from eth_utils import to_checksum_address

from .config import get_config, resolve_secret
from .errors import ChainError

logger = logging.getLogger(__name__)

PARITY_TRACE = "trace_transaction"
GETH_TRACE = "debug_traceTransaction"


class RpcProvider:
    def __init__(self, url, headers=None, trace_support=None):
        self.url = url
        self.headers = headers or {}
        self.trace_support = trace_support

    def __repr__(self):
        # the url may carry an API key
        return f"RpcProvider({self.url.split('?')[0]})"


def build_provider(rpc, config):
    """An rpc is a URL or {"url", "traceSupport"?, "headers"?, "apiKeyName"?}."""
    if isinstance(rpc, str):
        rpc = {"url": rpc}
    url = rpc["url"]
    if rpc.get("apiKeyName"):
        api_key = resolve_secret(rpc["apiKeyName"], config)
        if not api_key:
            raise ChainError(f"No API key found for {rpc['apiKeyName']}", "missing_api_key")
        url = url.replace("{API_KEY}", api_key)
    return RpcProvider(url, rpc.get("headers"), rpc.get("traceSupport"))


class Chain:
    def __init__(self, chain_id, rpcs, name=None, config=None):
        self.chain_id = chain_id
        self.name = name or str(chain_id)
        self.config = config or get_config()
        if not rpcs:
            raise ChainError(f"No RPC provider was given for chain {self.chain_id}", "no_rpc")
        self.providers = [build_provider(rpc, self.config) for rpc in rpcs]
        self._request_id = 0

    def _send(self, provider, method, params):
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        deadline = time.monotonic() + self.config.rpc_timeout
        response = requests.post(provider.url, json=payload, headers=provider.headers,
                                 timeout=self.config.rpc_timeout, stream=True)
        try:
            response.raise_for_status()
            body = self._read_body(response, deadline)
        finally:
            response.close()
        data = json.loads(body)
        if data.get("error"):
            raise ChainError(f"{method} failed on {provider!r}: {data['error']}", "rpc_error")
        return data.get("result")

    def _read_body(self, response, deadline):
        # the requests timeout bounds each read, the deadline bounds the whole response
        chunks = []
        for chunk in response.iter_content(chunk_size=8192):
            if time.monotonic() > deadline:
                raise requests.exceptions.Timeout(
                    f"Response took longer than {self.config.rpc_timeout}s"
                )
            chunks.append(chunk)
        return b"".join(chunks)

    def _request(self, method, params, description, accept=None):
        """Send to each provider in turn until one returns an acceptable result."""
        for provider in self.providers:
            try:
                result = self._send(provider, method, params)
                if accept is not None and not accept(result):
                    raise ChainError(f"{description} not found on {provider!r}", "not_found")
                logger.info("Fetched %s from %r on chain %s", description, provider, self.chain_id)
                return result
            except (requests.RequestException, ValueError, ChainError) as e:
                logger.warning("Failed to fetch %s from %r on chain %s: %s",
                               description, provider, self.chain_id, e)
                continue
        raise ChainError(f"None of the RPCs responded fetching {description} on chain {self.chain_id}",
                         "rpc_unavailable")

    def get_bytecode(self, address, block_number=None):
        try:
            address = to_checksum_address(address)
        except ValueError as e:
            raise ChainError(f"Invalid address {address}: {e}", "invalid_address")
        block = hex(block_number) if block_number is not None else "latest"
        return self._request("eth_getCode", [address, block], f"bytecode of {address}",
                             accept=lambda result: isinstance(result, str))

    def get_tx(self, tx_hash):
        return self._request("eth_getTransactionByHash", [tx_hash], f"tx {tx_hash}",
                             accept=lambda result: result is not None)

    def get_tx_receipt(self, tx_hash):
        return self._request("eth_getTransactionReceipt", [tx_hash], f"receipt of tx {tx_hash}",
                             accept=lambda result: result is not None)

    def get_creation_bytecode_for_factory(self, tx_hash, address):
        """Recover the init code of a contract created by another contract from the tx traces."""
        traced = [provider for provider in self.providers if provider.trace_support]
        if not traced:
            raise ChainError(f"No trace support for chain {self.chain_id}", "no_trace_support")

        for provider in traced:
            try:
                if provider.trace_support == PARITY_TRACE:
                    return self.extract_from_parity_trace(provider, tx_hash, address)
                if provider.trace_support == GETH_TRACE:
                    return self.extract_from_geth_trace(provider, tx_hash, address)
                logger.warning("Unknown trace support %s for %r", provider.trace_support, provider)
            except (requests.RequestException, ValueError, ChainError) as e:
                logger.warning("Failed to fetch creation bytecode from traces of %s on %r: %s",
                               tx_hash, provider, e)
                continue
        raise ChainError(f"Couldn't get the creation bytecode for factory deployed {address} "
                         f"with tx {tx_hash} on chain {self.chain_id}", "rpc_unavailable")

    def extract_from_parity_trace(self, provider, tx_hash, address):
        traces = self._send(provider, PARITY_TRACE, [tx_hash])
        if not isinstance(traces, list) or not traces:
            raise ChainError(f"Traces of {tx_hash} on {provider!r} are empty or malformed", "malformed_traces")

        create_traces = [trace for trace in traces if trace.get("type") == "create"]
        for trace in create_traces:
            if (trace.get("result") or {}).get("address", "").lower() == address.lower():
                init = trace.get("action", {}).get("init")
                if not init:
                    raise ChainError(".action.init not found in traces", "malformed_traces")
                return init
        created = ", ".join((trace.get("result") or {}).get("address", "?") for trace in create_traces)
        raise ChainError(f"Tx {tx_hash} does not create {address}. Created contracts: {created}",
                         "wrong_creation_tx")

    def extract_from_geth_trace(self, provider, tx_hash, address):
        trace = self._send(provider, GETH_TRACE, [tx_hash, {"tracer": "callTracer"}])
        if not isinstance(trace, dict) or not trace.get("calls"):
            raise ChainError(f"Traces of {tx_hash} on {provider!r} are empty or malformed", "malformed_traces")

        for call in find_create_calls(trace["calls"]):
            if call.get("to", "").lower() == address.lower():
                return call["input"]
        raise ChainError(f"No CREATE or CREATE2 call for {address} in the traces of {tx_hash}",
                         "wrong_creation_tx")

    def get_contract_creation_bytecode_and_receipt(self, address, tx_hash, creator_tx=None):
        receipt = self.get_tx_receipt(tx_hash)
        if creator_tx is None:
            creator_tx = self.get_tx(tx_hash)

        # contractAddress is only set when an EOA deployed the contract
        if receipt.get("contractAddress"):
            if receipt["contractAddress"].lower() != address.lower():
                raise ChainError(
                    f"Address of the contract being verified {address} doesn't match the address "
                    f"{receipt['contractAddress']} created by this transaction {tx_hash}",
                    "wrong_creation_tx",
                )
            logger.debug("Contract %s created with an EOA", address)
            return creator_tx["input"], receipt

        logger.debug("Contract %s created with a factory. Fetching traces", address)
        return self.get_creation_bytecode_for_factory(tx_hash, address), receipt


def find_create_calls(calls):
    """Depth first search of CREATE/CREATE2 frames in a callTracer call tree."""
    found = []
    for call in calls:
        if call.get("type") in ("CREATE", "CREATE2"):
            found.append(call)
        elif call.get("calls"):
            found.extend(find_create_calls(call["calls"]))
    return found
