# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import sys
import os
import re

import argparse
import asyncio
import subprocess
import logging
import tempfile

from typing import Optional, List, Tuple, Dict, Set, Union

import httpx

GitConfigType = Dict[str, Union[str, List[str]]]

logger: logging.Logger = logging.getLogger(__name__)

# Overridable via [commitsig] parameters
GPGBIN: Optional[str] = None

# How the gpgsig header looks in "git log --pretty=raw" output
SIG_HEADER = b'gpgsig '
SIG_BEGIN = b'-----BEGIN PGP SIGNATURE-----'
SIG_END = b'-----END PGP SIGNATURE-----'
# newline ending the gpgsig header, then the empty line before the message
SIG_TRAILER = b'\n\n'
# --pretty=raw indents every message line, empty ones included
MSG_INDENT = b'    '

COMMIT_RE = re.compile(rb'^commit ([0-9a-f]+)[^\n]*\n(?=tree )', flags=re.M)

# Result and severity levels
RES_VALID = 0
RES_NOSIG = 4
RES_NOKEY = 8
RES_ERROR = 16
RES_BADSIG = 32

# How each commit is treated when counting failures
CLS_EVALUATED = 'evaluated'
CLS_EXCEPTED = 'excepted'
CLS_IGNORED = 'ignored'

# Key directory response code for keys nobody registered
KEYDIR_UNREGISTERED = 1175

# Environment variables overriding [commitsig] settings
ENV_CONFIG: Dict[str, str] = {
    'SERVER_API_URL': 'keydirurl',
    'ACCESS_TOKEN': 'accesstoken',
    'ORG_ID': 'orgid',
    'IGNORE_COMMITS_START': 'ignorefrom',
    'MAX_FAIL_COUNT': 'maxfailcount',
    'GOOGLE_CHAT_WEBHOOK_URL': 'webhookurl',
    'COMMIT_EXCEPTIONS_HASHES': 'exceptions',
}

# Quick cache for config settings
CONFIGCACHE: Dict[str, GitConfigType] = dict()

# My version
__VERSION__ = '0.1.0'


class Error(Exception):
    """Base exception for commitsig errors.

    Args:
        message: Error description.
        errors: Optional list of detailed error messages.
    """

    errors: Optional[List[str]]

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        s = super().__str__()
        if self.errors:
            s = '%s: (%s)' % (s, ', '.join(self.errors))
        return s


class ConfigurationError(Error):
    """Raised when configuration is invalid or missing."""


class NotificationError(Error):
    """Raised when the failure notification could not be delivered."""


class ValidationError(Error):
    """Raised when signature validation fails."""


class MissingSignatureError(ValidationError):
    """Raised when a commit carries no signature."""


class MalformedSignatureError(ValidationError):
    """Raised when the embedded signature cannot be parsed."""


class BadSignatureError(ValidationError):
    """Raised when the signature does not match the commit contents."""


class NoKeyError(ValidationError):
    """Raised when the public key for validation cannot be found."""


class KeyUnregisteredError(NoKeyError):
    """Raised when the key directory does not know the signing key."""


class KeyFetchError(NoKeyError):
    """Raised when the key directory request fails."""


class CommitRecord:
    """A single commit taken from ``git log --pretty=raw`` output.

    Holds the raw commit text and everything learned about it while it moves
    through extraction, key resolution and verification.

    Args:
        sha: Commit hash as printed on the ``commit`` line.
        raw: Commit text, starting with its ``tree`` line.

    Attributes:
        signature: Normalized armored signature, once extracted.
        payload: The bytes git signed, once reconstructed.
        keyid: Lowercase hex ID of the signing key.
        pubkey: Armored public key returned by the key directory.
        signkey: Fingerprint of the key that made a good signature.
        verified: True only after a good signature was checked.
        result: One of the RES_* codes.
        error: Why verification failed, if it did.
    """

    sha: str
    raw: bytes
    signature: Optional[bytes]
    payload: Optional[bytes]
    keyid: Optional[str]
    pubkey: Optional[str]
    signkey: Optional[str]
    verified: bool
    result: int
    error: Optional[str]
    # where the gpgsig header starts and its end marker ends in raw
    _sigstart: int
    _sigend: int

    def __init__(self, sha: str, raw: bytes):
        self.sha = sha
        self.raw = raw
        self.signature = None
        self.payload = None
        self.keyid = None
        self.pubkey = None
        self.signkey = None
        self.verified = False
        self.result = RES_ERROR
        self.error = None

        self._sigstart = -1
        self._sigend = -1

    def get_signature(self) -> bytes:
        """Find the gpgsig header and return its normalized signature.

        Returns:
            Armored signature suitable for feeding to GnuPG.

        Raises:
            MissingSignatureError: If the commit has no gpgsig header.
            MalformedSignatureError: If the signature block never ends.
        """
        if self.signature is not None:
            return self.signature

        hdrat = self.raw.find(b'\n' + SIG_HEADER + SIG_BEGIN)
        if hdrat < 0:
            raise MissingSignatureError('Signature not found')
        beginat = hdrat + 1 + len(SIG_HEADER)
        endat = self.raw.find(SIG_END, beginat)
        if endat < 0:
            raise MalformedSignatureError('Signature block is not terminated')

        self._sigstart = hdrat + 1
        self._sigend = endat + len(SIG_END)
        self.signature = CommitRecord.normalize_signature(self.raw[beginat:endat])
        return self.signature

    def get_payload(self) -> bytes:
        """Rebuild the exact bytes that were signed.

        That is the commit object with the gpgsig header removed and the
        --pretty=raw message indentation undone.

        Raises:
            MalformedSignatureError: If the signature is not followed by a message.
        """
        if self.payload is not None:
            return self.payload

        self.get_signature()
        tail = self.raw[self._sigend:]
        if not tail.startswith(SIG_TRAILER):
            raise MalformedSignatureError('Unexpected data after signature block')

        lines = list()
        for line in tail[len(SIG_TRAILER):].split(b'\n'):
            if line.startswith(MSG_INDENT):
                line = line[len(MSG_INDENT):]
            lines.append(line)
        message = b'\n'.join(lines)
        if message and not message.endswith(b'\n'):
            message += b'\n'

        self.payload = self.raw[:self._sigstart] + b'\n' + message
        return self.payload

    def parse(self) -> None:
        """Extract signature, signing key ID and payload, in that order."""
        sigdata = self.get_signature()
        if self.keyid is None:
            self.keyid = get_signing_keyid(sigdata)
        self.get_payload()

    def set_error(self, result: int, ex: Exception) -> None:
        self.verified = False
        self.result = result
        self.error = str(ex)

    @staticmethod
    def normalize_signature(block: bytes) -> bytes:
        # git indents continuation lines of the header by one space; armor
        # parsers want them flush left
        lines = [line.strip() for line in block.split(b'\n')]
        while lines and not lines[-1]:
            lines.pop()
        return b'\n'.join(lines) + b'\n' + SIG_END + b'\n'


def split_commits(data: bytes) -> List[CommitRecord]:
    """Split ``git log --pretty=raw`` output into commit records.

    Args:
        data: Raw log output, newest commit first.

    Returns:
        Records in the order they appear in the log. Empty if no commit
        lines were found.
    """
    commits: List[CommitRecord] = list()
    matches = list(COMMIT_RE.finditer(data))
    for at, match in enumerate(matches):
        if at + 1 < len(matches):
            raw = data[match.end():matches[at + 1].start()]
            # git log puts an empty line between commits
            if raw.endswith(b'\n'):
                raw = raw[:-1]
        else:
            raw = data[match.end():]
        commits.append(CommitRecord(match.groups()[0].decode(), raw))

    logger.debug('Found %s commits', len(commits))
    return commits


class KeyResolver:
    """Look up public keys in the key directory, remembering every answer.

    One resolver is meant to live for a single run, so that commits sharing a
    signer only cost one request. Nothing is ever evicted.

    Args:
        url: Key directory endpoint.
        token: Access token sent with every request.
        orgid: Organization ID sent with every request.
        client: HTTP client to send requests with.

    Attributes:
        cache: Public keys by lowercase key ID.
    """

    cache: Dict[str, str]

    def __init__(self, url: Optional[str], token: Optional[str], orgid: Optional[str],
                 client: httpx.AsyncClient):
        if not url:
            raise ConfigurationError('Key directory URL is not set')
        self.url = url
        self.token = token
        self.orgid = orgid
        self.client = client
        self.cache = dict()

    async def resolve(self, keyid: str) -> str:
        """Return the public key for a key ID.

        Args:
            keyid: Hex key ID of the signing key.

        Returns:
            Armored public key.

        Raises:
            KeyUnregisteredError: If the key directory does not know the key.
            KeyFetchError: If the request or its response could not be used.
        """
        if keyid in self.cache:
            logger.debug('Using cached key for %s', keyid)
            return self.cache[keyid]

        pubkey = await self._fetch(keyid)
        self.cache[keyid] = pubkey
        return pubkey

    async def _fetch(self, keyid: str) -> str:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'Access-Token': self.token or '',
            'Organization-Id': self.orgid or '',
        }
        logger.debug('Looking up %s in %s', keyid, self.url)
        try:
            resp = await self.client.post(self.url, json={'keyid': keyid}, headers=headers)
            rdata = resp.json()
        except (httpx.HTTPError, ValueError) as ex:
            raise KeyFetchError(str(ex))

        if not isinstance(rdata, dict):
            raise KeyFetchError('Unexpected key directory response: %s' % rdata)
        if rdata.get('status') != 'success':
            if rdata.get('code') == KEYDIR_UNREGISTERED:
                raise KeyUnregisteredError('Key %s is not registered in the key directory' % keyid)
            raise KeyFetchError(str(rdata.get('user_error')))

        try:
            pubkey = rdata['data']['publickey']
        except (KeyError, TypeError) as ex:
            raise KeyFetchError('No public key in key directory response: %s' % ex)
        if not isinstance(pubkey, str) or not pubkey:
            raise KeyFetchError('Empty public key in key directory response')
        return pubkey


class GPGVerifier:
    """Check detached OpenPGP signatures against a given public key.

    Every check runs in a throwaway GnuPG home that holds only the key it was
    given, so nothing in the user's own keyring can vouch for a commit.

    Attributes:
        keyrings: Imported keyring contents by public key, so each key is
            only imported once.
    """

    keyrings: Dict[bytes, bytes]

    def __init__(self) -> None:
        self.keyrings = dict()

    def verify(self, payload: bytes, sigdata: bytes, pubkey: Union[str, bytes]) -> str:
        """Verify a signature over a payload.

        Args:
            payload: The signed bytes.
            sigdata: Armored detached signature.
            pubkey: Armored public key expected to have made the signature.

        Returns:
            Fingerprint of the signing key.

        Raises:
            BadSignatureError: If the signature does not match the payload.
            NoKeyError: If the signature was not made by this key.
            ValidationError: If GnuPG could not verify for any other reason.
        """
        if isinstance(pubkey, str):
            pubkey = pubkey.encode()
        with tempfile.TemporaryDirectory(suffix='.commitsig.gnupg') as td:
            keyringargs = ['--homedir', td, '--no-default-keyring', '--keyring', 'pub']
            if pubkey in self.keyrings:
                logger.debug('Reusing cached keyring')
                with open(os.path.join(td, 'pub'), 'wb') as kfh:
                    kfh.write(self.keyrings[pubkey])
            else:
                logger.debug('Importing into new keyring')
                gpgargs = keyringargs + ['--status-fd=1', '--import']
                ecode, out, err = gpg_run_command(gpgargs, stdin=pubkey)
                # look for IMPORT_OK
                if out.find(b'[GNUPG:] IMPORT_OK') < 0:
                    raise ValidationError('Could not import GnuPG public key')
                with open(os.path.join(td, 'pub'), 'rb') as kfh:
                    self.keyrings[pubkey] = kfh.read()

            spath = os.path.join(td, 'sigdata')
            with open(spath, 'wb') as fh:
                fh.write(sigdata)
            gpgargs = keyringargs + ['--status-fd=1', '--verify', spath, '-']
            ecode, out, err = gpg_run_command(gpgargs, stdin=payload)

        good, bad, nokey, signkey = GPGVerifier._check_gpg_status(out)
        if bad:
            raise BadSignatureError('Bad signature')
        if good and signkey:
            return signkey
        if nokey:
            raise NoKeyError('Signature was not made by the registered key')
        raise ValidationError('Failed to validate PGP signature', errors=err.decode().strip().split('\n')[-1:])

    @staticmethod
    def _check_gpg_status(status: bytes) -> Tuple[bool, bool, bool, str]:
        good = False
        bad = False
        nokey = False
        signkey = ''

        logger.debug('GNUPG status:\n\t%s', status.decode().strip().replace('\n', '\n\t'))
        if re.search(rb'^\[GNUPG:] GOODSIG ([0-9A-F]+)\s+(.*)$', status, flags=re.M):
            good = True
        if re.search(rb'^\[GNUPG:] BADSIG ', status, flags=re.M):
            bad = True
        if re.search(rb'^\[GNUPG:] NO_PUBKEY ', status, flags=re.M):
            nokey = True
        if (vs_matches := re.search(rb'^\[GNUPG:] VALIDSIG ([0-9A-F]+) ', status, flags=re.M)):
            signkey = vs_matches.groups()[0].decode()

        return good, bad, nokey, signkey


def get_signing_keyid(sigdata: bytes) -> str:
    """Get the issuer key ID of the first signature packet.

    Args:
        sigdata: Armored OpenPGP signature.

    Returns:
        Lowercase hex key ID.

    Raises:
        MalformedSignatureError: If GnuPG cannot parse the signature.
    """
    with tempfile.TemporaryDirectory(suffix='.commitsig.gnupg') as td:
        ecode, out, err = gpg_run_command(['--homedir', td, '--list-packets'], stdin=sigdata)
    if ecode > 0:
        # gpg complains about every bad packet, the last line says it all
        raise MalformedSignatureError('Could not parse signature', errors=err.decode().strip().split('\n')[-1:])
    matches = re.search(rb'^:signature packet: algo \d+, keyid ([0-9A-F]+)', out, flags=re.M)
    if not matches:
        raise MalformedSignatureError('No signature packet found')
    return matches.groups()[0].decode().lower()


async def verify_commit(commit: CommitRecord, resolver: KeyResolver, verifier: GPGVerifier) -> None:
    """Run one commit through extraction, key lookup and verification.

    Failures are recorded on the commit and never raised, so one bad commit
    cannot stop the rest of the batch.
    """
    try:
        commit.parse()
        assert commit.keyid is not None and commit.payload is not None and commit.signature is not None
        commit.pubkey = await resolver.resolve(commit.keyid)
        commit.signkey = verifier.verify(commit.payload, commit.signature, commit.pubkey)
    except MissingSignatureError as ex:
        commit.set_error(RES_NOSIG, ex)
    except NoKeyError as ex:
        commit.set_error(RES_NOKEY, ex)
    except BadSignatureError as ex:
        commit.set_error(RES_BADSIG, ex)
    except ValidationError as ex:
        commit.set_error(RES_ERROR, ex)
    except Exception as ex:
        logger.debug('Unexpected error verifying %s', commit.sha, exc_info=True)
        commit.set_error(RES_ERROR, ex)
    else:
        commit.verified = True
        commit.result = RES_VALID


def classify_commits(commits: List[CommitRecord],
                     ignore_from: Optional[str] = None,
                     exceptions: Optional[Set[str]] = None) -> List[Tuple[str, CommitRecord]]:
    """Decide how each commit counts towards the failure total.

    Args:
        commits: Commits in log order, newest first.
        ignore_from: This commit and everything older is ignored.
        exceptions: Commits that are never counted.

    Returns:
        (class, commit) pairs in log order, class being one of
        CLS_EVALUATED, CLS_EXCEPTED or CLS_IGNORED.
    """
    if exceptions is None:
        exceptions = set()
    classified = list()
    ignoring = False
    for commit in commits:
        if ignore_from and commit.sha == ignore_from:
            ignoring = True
        if ignoring:
            classified.append((CLS_IGNORED, commit))
        elif commit.sha in exceptions:
            classified.append((CLS_EXCEPTED, commit))
        else:
            classified.append((CLS_EVALUATED, commit))
    return classified


def count_failures(classified: List[Tuple[str, CommitRecord]]) -> int:
    return sum(1 for cls, commit in classified if cls == CLS_EVALUATED and not commit.verified)


def make_report(commits: List[CommitRecord]) -> str:
    """Build the notification text listing every commit in the batch."""
    lines = ['This message is being sent because a commit was not verified.']
    for commit in commits:
        lines.append('')
        lines.append('Commit: %s' % commit.sha)
        lines.append('Signature found: %s' % (commit.signature is not None))
        if commit.keyid:
            lines.append('KeyID: %s' % commit.keyid)
            lines.append('Key found in key directory: %s' % (commit.pubkey is not None))
        lines.append('Commit verified: %s' % commit.verified)
    return '\n'.join(lines) + '\n'


async def send_notification(client: httpx.AsyncClient, webhook: Optional[str], text: str) -> None:
    """Post a chat notification to the webhook.

    Raises:
        NotificationError: If there is no webhook or the post failed.
    """
    if not webhook:
        raise NotificationError('Webhook URL not found')
    logger.debug('Sending notification to %s', webhook)
    try:
        resp = await client.post(webhook, json={'text': text})
        resp.json()
    except (httpx.HTTPError, ValueError) as ex:
        raise NotificationError('Error sending notification', errors=[str(ex)])


def log_results(classified: List[Tuple[str, CommitRecord]], fail_count: int, max_fail_count: int) -> None:
    for cls, commit in classified:
        if cls != CLS_EVALUATED:
            logger.critical('  SKIP | %s (%s)', commit.sha, cls)
            if commit.error:
                logger.info('       | %s', commit.error)
            continue
        if commit.result == RES_VALID:
            logger.critical('  PASS | %s', commit.sha)
            logger.info('       | key: %s', commit.signkey)
            continue
        if commit.result <= RES_NOSIG:
            logger.critical(' NOSIG | %s', commit.sha)
        elif commit.result <= RES_NOKEY:
            logger.critical(' NOKEY | %s', commit.sha)
        elif commit.result <= RES_ERROR:
            logger.critical(' ERROR | %s', commit.sha)
        else:
            logger.critical('BADSIG | %s', commit.sha)
        if commit.keyid:
            logger.critical('       | keyid: %s', commit.keyid)
        logger.critical('       | %s', commit.error)

    logger.critical('---')
    logger.critical('%s commits checked, %s failed verification (%s allowed)',
                    len(classified), fail_count, max_fail_count)


async def verify_batch(data: bytes, config: GitConfigType, client: Optional[httpx.AsyncClient] = None) -> int:
    """Verify every commit in a raw log dump and decide the outcome.

    Args:
        data: ``git log --pretty=raw`` output.
        config: Settings as returned by :func:`get_main_config`.
        client: HTTP client to use for the key directory and the webhook.
            A new one is created if not given.

    Returns:
        Process exit status: 0 if failures are within the allowed count,
        1 otherwise.

    Raises:
        ConfigurationError: If the settings are unusable.
    """
    commits = split_commits(data)
    if not commits:
        logger.info('No commits to verify')
        return 0

    if client is None:
        async with httpx.AsyncClient() as client:
            return await _verify_commits(commits, config, client)
    return await _verify_commits(commits, config, client)


async def _verify_commits(commits: List[CommitRecord], config: GitConfigType, client: httpx.AsyncClient) -> int:
    max_fail_count = get_max_fail_count(config)
    exceptions = get_exception_hashes(config)
    ignore_from = get_config_str(config, 'ignorefrom')
    resolver = KeyResolver(get_config_str(config, 'keydirurl'), get_config_str(config, 'accesstoken'),
                           get_config_str(config, 'orgid'), client)
    verifier = GPGVerifier()

    for commit in commits:
        await verify_commit(commit, resolver, verifier)

    classified = classify_commits(commits, ignore_from=ignore_from, exceptions=exceptions)
    fail_count = count_failures(classified)
    log_results(classified, fail_count, max_fail_count)
    if fail_count <= max_fail_count:
        logger.critical('Verification complete!')
        return 0

    try:
        await send_notification(client, get_config_str(config, 'webhookurl'), make_report(commits))
    except NotificationError as ex:
        logger.critical('E: %s', ex)
    logger.critical('E: Too many commits failed verification')
    return 1


def _run_command(cmdargs: List[str],
                 stdin: Optional[bytes] = None,
                 env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s', ' '.join(cmdargs))
    cp = subprocess.run(cmdargs, input=stdin, env=env, capture_output=True, text=False)
    logger.debug('Completed %s', repr(cp))
    return cp.returncode, cp.stdout, cp.stderr


def git_run_command(gitdir: Optional[str],
                    args: List[str],
                    stdin: Optional[bytes] = None,
                    env: Optional[Dict[str, str]] = None) -> Tuple[int, bytes, bytes]:
    if gitdir:
        args = ['git', '--git-dir', gitdir, '--no-pager'] + args
    else:
        args = ['git', '--no-pager'] + args
    return _run_command(args, stdin=stdin, env=env)


def gpg_run_command(cmdargs: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
    gpgbin = set_bin_paths(None)
    cmdargs = [gpgbin, '--batch', '--no-autostart', '--no-auto-key-retrieve', '--no-auto-check-trustdb'] + cmdargs
    return _run_command(cmdargs, stdin)


def get_config_from_git(regexp: str,
                        section: Optional[str] = None,
                        defaults: Optional[GitConfigType] = None,
                        multivals: Optional[List[str]] = None) -> GitConfigType:
    if multivals is None:
        multivals = list()

    args = ['config', '-z', '--get-regexp', regexp]
    _, bout, _ = git_run_command(None, args)
    if defaults is None:
        defaults = dict()

    if not len(bout):
        return defaults

    gitconfig = defaults
    out = bout.decode()

    for line in out.split('\x00'):
        if not line:
            continue
        key, value = line.split('\n', 1)
        try:
            chunks = key.split('.')
            # Drop the starting part
            chunks.pop(0)
            cfgkey = chunks.pop(-1).lower()
            if len(chunks):
                if not section:
                    # Ignore it
                    continue
                # We're in a subsection
                sname = '.'.join(chunks)
                if sname != section:
                    # Not our section
                    continue
            elif section:
                # We want config from a subsection specifically
                continue

            if cfgkey in multivals:
                existing = gitconfig.get(cfgkey)
                if existing is None:
                    gitconfig[cfgkey] = [value]
                elif isinstance(existing, str):
                    gitconfig[cfgkey] = [existing, value]
                else:
                    existing.append(value)
            else:
                gitconfig[cfgkey] = value
        except ValueError:
            logger.debug('Ignoring git config entry %s', line)

    return gitconfig


def set_bin_paths(config: Optional[GitConfigType]) -> str:
    global GPGBIN
    if GPGBIN is None:
        if config and config.get('gpg-bin'):
            _gpgbin = config.get('gpg-bin')
            assert isinstance(_gpgbin, str), 'gpg-bin must be a string'
            GPGBIN = _gpgbin
        elif (_gpgbin := get_config_from_git(r'gpg\..*').get('program')) is not None:
            assert isinstance(_gpgbin, str), 'gpg program must be a string'
            GPGBIN = _gpgbin
        else:
            GPGBIN = 'gpg'
    return GPGBIN


def get_main_config(section: Optional[str] = None) -> GitConfigType:
    """Load commitsig configuration.

    Settings come from git config (``commitsig.*``), then the environment
    variables in ENV_CONFIG override them.

    Args:
        section: Optional subsection name for commitsig config.
            If None, loads base commitsig.* settings.

    Returns:
        Configuration dictionary. Results are cached per section.
    """
    global CONFIGCACHE
    if section:
        csection = section
    else:
        csection = 'default'
    if csection in CONFIGCACHE:
        return CONFIGCACHE[csection]
    config = get_config_from_git(r'commitsig\..*', section=section, multivals=['exceptions'])
    for envname, cfgkey in ENV_CONFIG.items():
        envval = os.environ.get(envname)
        if envval:
            config[cfgkey] = envval
    set_bin_paths(config)
    # don't leak the access token into debug output
    logger.debug('config: %s', {k: v for k, v in config.items() if k != 'accesstoken'})
    CONFIGCACHE[csection] = config
    return config


def get_config_str(config: GitConfigType, key: str) -> Optional[str]:
    value = config.get(key)
    if isinstance(value, list):
        # last one wins, same as git
        value = value[-1] if value else None
    if value is not None:
        value = value.strip()
    return value or None


def get_max_fail_count(config: GitConfigType) -> int:
    """Get the number of failed commits tolerated before alerting.

    Unparseable values count as 0.

    Raises:
        ConfigurationError: If the value is negative.
    """
    value = get_config_str(config, 'maxfailcount')
    if value is None:
        return 0
    try:
        maxfail = int(value)
    except ValueError:
        logger.debug('Ignoring invalid maxfailcount %s', value)
        return 0
    if maxfail < 0:
        raise ConfigurationError('maxfailcount must not be negative: %s' % value)
    return maxfail


def get_exception_hashes(config: GitConfigType) -> Set[str]:
    values = config.get('exceptions', list())
    if isinstance(values, str):
        values = [values]
    hashes = set()
    for value in values:
        for chunk in value.split(','):
            chunk = chunk.strip()
            if chunk:
                hashes.add(chunk)
    return hashes


def _load_commits(cmdargs: argparse.Namespace) -> bytes:
    if cmdargs.revrange:
        gitargs = ['log', '--pretty=raw'] + cmdargs.revrange
        ecode, out, err = git_run_command(None, gitargs)
        if ecode > 0:
            raise RuntimeError('git log failed: %s' % err.decode().strip())
        return out
    if not sys.stdin.isatty():
        return sys.stdin.buffer.read()

    logger.critical('E: Pipe "git log --pretty=raw" output or pass a revision range')
    raise RuntimeError('Nothing to do')


def cmd_verify(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    if cmdargs.maxfailcount is not None:
        config['maxfailcount'] = str(cmdargs.maxfailcount)
    if cmdargs.ignorefrom:
        config['ignorefrom'] = cmdargs.ignorefrom
    if cmdargs.exceptions:
        current = config.get('exceptions', list())
        if isinstance(current, str):
            current = [current]
        config['exceptions'] = current + cmdargs.exceptions

    try:
        data = _load_commits(cmdargs)
    except IOError as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    try:
        ecode = asyncio.run(verify_batch(data, config))
    except ConfigurationError as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)

    sys.exit(ecode)


def command() -> None:
    parser = argparse.ArgumentParser(
        prog='commitsig',
        description='Verify commit signatures against keys from a key directory',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Be a bit more verbose')
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Show debugging output')
    parser.add_argument('-s', '--section', dest='section', default=None,
                        help='Use config section [commitsig "sectionname"]')
    parser.add_argument('--version', action='version', version=__VERSION__)

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    sp_verify = subparsers.add_parser('verify', help='Verify signatures of commits from git log --pretty=raw')
    sp_verify.add_argument('--max-fail-count', dest='maxfailcount', type=int, default=None,
                           help='Number of unverified commits tolerated before alerting')
    sp_verify.add_argument('--ignore-from', dest='ignorefrom', default=None,
                           help='Ignore this commit and everything older')
    sp_verify.add_argument('-x', '--except', dest='exceptions', action='append', default=None,
                           help='Never count this commit as failed (may be repeated)')
    sp_verify.add_argument('revrange', nargs='*',
                           help='Revision range to run git log on, instead of reading stdin')
    sp_verify.set_defaults(func=cmd_verify)

    _args = parser.parse_args()

    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if _args.verbose:
        ch.setLevel(logging.INFO)
    elif _args.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.CRITICAL)

    logger.addHandler(ch)

    if 'func' not in _args:
        parser.print_help()
        sys.exit(1)

    config = get_main_config(section=_args.section)

    try:
        _args.func(_args, config)
    except RuntimeError as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)


if __name__ == '__main__':
    command()
