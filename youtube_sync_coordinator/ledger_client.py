import itertools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from .failures import SyncError


logger = logging.getLogger(__name__)

DEFAULT_LEDGER_URL = "http://localhost:5279"
DEFAULT_TIMEOUT_SECONDS = 5 * 60
DEFAULT_PAGE_SIZE = 50


class LedgerError(SyncError):
    """
    Raised when the ledger daemon answers with an error or cannot be reached.

    The daemon's own message text is kept verbatim so it can be substring-matched.
    """


def format_amount(amount: float) -> str:
    return f"{amount:.8f}".rstrip('0').rstrip('.') or '0'


@dataclass
class Claim:
    """
    A claim as reported by the ledger daemon.
    """

    claim_id: str
    name: str
    address: str = ''
    txid: str = ''
    nout: int = 0
    height: int = 0
    claim_type: str = ''
    value_type: str = ''
    signing_channel_id: str = ''
    thumbnail_url: str = ''
    stream_size: Optional[int] = None
    title: str = ''
    is_my_output: bool = False


    @classmethod
    def from_dict(cls, data: Dict) -> 'Claim':
        """
        Creates a Claim from a claim dictionary returned by the daemon.
        """

        value = data.get('value') or {}
        source = value.get('source') or {}
        size = source.get('size')
        signing_channel = data.get('signing_channel') or {}

        return cls(
            claim_id=data.get('claim_id', ''),
            name=data.get('name', ''),
            address=data.get('address', ''),
            txid=data.get('txid', ''),
            nout=int(data.get('nout') or 0),
            height=int(data.get('height') or 0),
            claim_type=data.get('type', ''),
            value_type=data.get('value_type', ''),
            signing_channel_id=signing_channel.get('claim_id', ''),
            thumbnail_url=(value.get('thumbnail') or {}).get('url', ''),
            stream_size=int(size) if size not in (None, '') else None,
            title=value.get('title', ''),
            is_my_output=bool(data.get('is_my_output')),
        )


class LedgerClient:
    """
    JSON-RPC client for the ledger daemon.
    """

    def __init__(
        self,
        url: str = DEFAULT_LEDGER_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._ids = itertools.count(1)


    @classmethod
    def from_config(cls, config) -> 'LedgerClient':
        return cls(url=config.ledger_url, timeout_seconds=config.ledger_rpc_timeout_seconds)


    def call(self, method: str, **params):
        """
        Performs one RPC call and returns its result. None-valued params are dropped.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": {key: value for key, value in params.items() if value is not None},
        }
        try:
            response = self._session.post(self.url, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise LedgerError(f"ledger rpc {method} failed: {e}")
        except ValueError as e:
            raise LedgerError(f"ledger rpc {method} returned invalid JSON: {e}")

        error = body.get('error')
        if error:
            message = error.get('message') if isinstance(error, dict) else str(error)
            raise LedgerError(f"Error in daemon: {message}")
        return body.get('result')


    def _list_all(self, method: str, **params) -> List[Dict]:
        """Walks every page of a paginated listing."""
        items: List[Dict] = []
        page = 1
        while True:
            result = self.call(method, page=page, page_size=DEFAULT_PAGE_SIZE, **params) or {}
            items.extend(result.get('items') or [])
            total_pages = int(result.get('total_pages') or 1)
            if page >= total_pages:
                return items
            page += 1


    def status(self) -> Dict:
        return self.call('status') or {}


    def account_list(self) -> List[Dict]:
        result = self.call('account_list') or {}
        return result.get('items', []) if isinstance(result, dict) else list(result)


    def account_balance(self, account_id: Optional[str] = None) -> Dict:
        return self.call('account_balance', account_id=account_id) or {}


    def account_fund(
        self,
        from_account: Optional[str] = None,
        to_account: Optional[str] = None,
        amount: Optional[float] = None,
        outputs: int = 1,
        everything: bool = False,
        broadcast: bool = True,
    ) -> Dict:
        return self.call(
            'account_fund',
            from_account=from_account,
            to_account=to_account,
            amount=format_amount(amount) if amount is not None else None,
            outputs=outputs,
            everything=everything,
            broadcast=broadcast,
        ) or {}


    def account_set(self, account_id: str, **settings) -> Dict:
        return self.call('account_set', account_id=account_id, **settings) or {}


    def address_list(self, account_id: Optional[str] = None) -> List[Dict]:
        return self._list_all('address_list', account_id=account_id)


    def address_unused(self, account_id: Optional[str] = None) -> str:
        return self.call('address_unused', account_id=account_id)


    def utxo_list(self, account_id: Optional[str] = None) -> List[Dict]:
        return self._list_all('utxo_list', account_id=account_id)


    def utxo_release(self, account_id: Optional[str] = None):
        return self.call('utxo_release', account_id=account_id)


    def txo_spend(self, account_id: Optional[str] = None, txo_type: Optional[str] = None, batch_size: int = 500):
        return self.call('txo_spend', account_id=account_id, type=txo_type, batch_size=batch_size, blocking=True)


    def channel_list(self, account_id: Optional[str] = None) -> List[Claim]:
        return [Claim.from_dict(item) for item in self._list_all('channel_list', account_id=account_id)]


    def channel_create(self, name: str, bid: float, **options) -> Dict:
        return self.call('channel_create', name=name, bid=format_amount(bid), **options) or {}


    def stream_list(self, account_id: Optional[str] = None) -> List[Claim]:
        return [Claim.from_dict(item) for item in self._list_all('stream_list', account_id=account_id, resolve=True)]


    def claim_search(self, **criteria) -> List[Claim]:
        result = self.call('claim_search', **criteria) or {}
        return [Claim.from_dict(item) for item in result.get('items') or []]


    def stream_create(self, name: str, bid: float, file_path: str, **options) -> Dict:
        return self.call('stream_create', name=name, bid=format_amount(bid), file_path=file_path, **options) or {}


    def stream_update(self, claim_id: str, **options) -> Dict:
        return self.call('stream_update', claim_id=claim_id, **options) or {}


    def stream_abandon(self, txid: str, nout: int, account_id: Optional[str] = None, blocking: bool = True) -> Dict:
        return self.call('stream_abandon', txid=txid, nout=nout, account_id=account_id, blocking=blocking) or {}


def first_output(transaction: Dict) -> Dict:
    """The first output of a transaction summary, which carries the claim."""
    outputs = transaction.get('outputs') or []
    if not outputs:
        raise LedgerError("Error in daemon: transaction has no outputs")
    return outputs[0]
