import pytest
import requests

from youtube_sync_coordinator.ledger_client import Claim, LedgerClient, LedgerError, first_output, format_amount


class FakeResponse:

    def __init__(self, body=None, status_code=200):
        self.body = body
        self.status_code = status_code


    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


    def json(self):
        if self.body is None:
            raise ValueError("Expecting value")
        return self.body


class FakeSession:
    """Answers each post with the next scripted response and keeps the payloads."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.payloads = []


    def post(self, url, json=None, timeout=None):
        self.payloads.append(json)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def client(*responses):
    session = FakeSession(*responses)
    return LedgerClient(url="http://ledger", session=session), session


def test_call_drops_none_params_and_returns_result():
    ledger, session = client(FakeResponse({'result': {'is_running': True}}))

    assert ledger.call('status', account_id=None, page=1) == {'is_running': True}
    assert session.payloads[0]['method'] == 'status'
    assert session.payloads[0]['params'] == {'page': 1}


def test_daemon_error_keeps_its_message():
    ledger, _ = client(FakeResponse({'error': {'code': -32500, 'message': 'txn-mempool-conflict'}}))

    with pytest.raises(LedgerError) as excinfo:
        ledger.status()

    assert str(excinfo.value) == "Error in daemon: txn-mempool-conflict"


@pytest.mark.parametrize("response", [
    FakeResponse(status_code=500),
    FakeResponse(body=None),
    requests.ConnectionError("connection refused"),
])
def test_transport_failures_raise_ledger_errors(response):
    ledger, _ = client(response)

    with pytest.raises(LedgerError):
        ledger.status()


def test_listing_walks_every_page():
    ledger, session = client(
        FakeResponse({'result': {'items': [{'address': 'a1'}], 'total_pages': 2}}),
        FakeResponse({'result': {'items': [{'address': 'a2'}], 'total_pages': 2}}),
    )

    assert [item['address'] for item in ledger.address_list()] == ['a1', 'a2']
    assert [payload['params']['page'] for payload in session.payloads] == [1, 2]


def test_stream_list_parses_claims():
    item = {
        'claim_id': 'c1',
        'name': 'my-video',
        'address': 'bAddr',
        'txid': 'tx1',
        'nout': 0,
        'height': 42,
        'type': 'claim',
        'value_type': 'stream',
        'signing_channel': {'claim_id': 'c0ffee'},
        'value': {'thumbnail': {'url': 'https://thumbnails.lbry.com/abc'}, 'source': {'size': '2048'}, 'title': 'My video'},
    }
    ledger, session = client(FakeResponse({'result': {'items': [item], 'total_pages': 1}}))

    claim, = ledger.stream_list(account_id='acct-1')

    assert claim.claim_type == 'claim'
    assert claim.value_type == 'stream'
    assert claim.signing_channel_id == 'c0ffee'
    assert claim.thumbnail_url == 'https://thumbnails.lbry.com/abc'
    assert claim.stream_size == 2048
    assert session.payloads[0]['params']['resolve'] is True


def test_claim_without_source_size():
    assert Claim.from_dict({'claim_id': 'c1', 'name': 'n'}).stream_size is None


def test_amounts_are_sent_as_strings():
    ledger, session = client(FakeResponse({'result': {'outputs': [{'claim_id': 'c1'}]}}))

    ledger.stream_create('name', 0.002, '/tmp/video.mp4')

    assert session.payloads[0]['params']['bid'] == '0.002'
    assert format_amount(1.0) == '1'
    assert format_amount(0) == '0'


def test_first_output():
    assert first_output({'outputs': [{'claim_id': 'c1'}]}) == {'claim_id': 'c1'}
    with pytest.raises(LedgerError):
        first_output({})
