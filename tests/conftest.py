import json
import shutil
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

import commitsig

from typing import Dict, List, Any

SAMPLES = Path(__file__).parent.parent / 'samples'

KEYDIR_URL = 'https://keys.example.com/api/v1/keys/lookup'
WEBHOOK_URL = 'https://chat.example.com/v1/spaces/builds/messages'

# Commits in samples/git-log-raw.txt, newest first
SHA_BOB = '8c40dd09466d990689b7cd628e8eaf0eebd26b1f'
SHA_FOURTH = 'dfbbf6dd3c85d353662db642cc3ee2a61cca28e4'
SHA_UNSIGNED = 'fca9e56abf0346b39a0b411f08dd053e70bda9c9'
SHA_MULTILINE = '13563cd6ae31fcc44227ce2fa09c486f4ea772d3'
SHA_INITIAL = '663c6457a394e4799c79f2fbecba78eace01d2af'
LOG_SHAS = [SHA_BOB, SHA_FOURTH, SHA_UNSIGNED, SHA_MULTILINE, SHA_INITIAL]

KEYID_ALICE = 'b72bc35a68b23cba'
KEYID_BOB = '2e7861bed466820d'
FPR_ALICE = 'A0A8840B1FBDEAC782275914B72BC35A68B23CBA'
FPR_BOB = '1ACFC0C15E6684B13FF2ACF12E7861BED466820D'


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests away from the user's git config and gpg settings."""
    monkeypatch.setattr(commitsig, 'GPGBIN', shutil.which('gpg') or 'gpg')
    monkeypatch.setattr(commitsig, 'CONFIGCACHE', dict())
    for envname in commitsig.ENV_CONFIG:
        monkeypatch.delenv(envname, raising=False)


@pytest.fixture
def raw_log() -> bytes:
    """Real git log --pretty=raw output with signed and unsigned commits."""
    return (SAMPLES / 'git-log-raw.txt').read_bytes()


@pytest.fixture
def alice_key() -> str:
    return (SAMPLES / 'keys' / 'alice.asc').read_text()


@pytest.fixture
def bob_key() -> str:
    return (SAMPLES / 'keys' / 'bob.asc').read_text()


@pytest.fixture
def multiline_payload() -> bytes:
    """What git signed for SHA_MULTILINE, taken from git cat-file."""
    return (SAMPLES / 'payload-13563cd6.txt').read_bytes()


@pytest.fixture
def base_config() -> commitsig.GitConfigType:
    return {
        'keydirurl': KEYDIR_URL,
        'accesstoken': 'secret-token',
        'orgid': 'org-42',
        'webhookurl': WEBHOOK_URL,
    }


class FakeKeyDirectory:
    """Stands in for both the key directory and the chat webhook."""

    def __init__(self, keys: Dict[str, str]):
        self.keys = keys
        self.lookups: List[httpx.Request] = list()
        self.notifications: List[Dict[str, Any]] = list()

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == WEBHOOK_URL:
            self.notifications.append(json.loads(request.content))
            return httpx.Response(200, json={'name': 'spaces/builds/messages/1'})

        self.lookups.append(request)
        keyid = json.loads(request.content)['keyid']
        if keyid in self.keys:
            return httpx.Response(200, json={'status': 'success', 'data': {'publickey': self.keys[keyid]}})
        return httpx.Response(200, json={'status': 'fail', 'code': 1175, 'user_error': 'Key not found'})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def keydir(alice_key: str, bob_key: str) -> FakeKeyDirectory:
    return FakeKeyDirectory({KEYID_ALICE: alice_key, KEYID_BOB: bob_key})


@pytest.fixture
def sample() -> SimpleNamespace:
    """Names for the commits and keys in the samples directory."""
    return SimpleNamespace(
        keydir_url=KEYDIR_URL,
        webhook_url=WEBHOOK_URL,
        sha_bob=SHA_BOB,
        sha_fourth=SHA_FOURTH,
        sha_unsigned=SHA_UNSIGNED,
        sha_multiline=SHA_MULTILINE,
        sha_initial=SHA_INITIAL,
        log_shas=LOG_SHAS,
        keyid_alice=KEYID_ALICE,
        keyid_bob=KEYID_BOB,
        fpr_alice=FPR_ALICE,
        fpr_bob=FPR_BOB,
    )
