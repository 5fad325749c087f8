#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
create/parse/verify android apk v1 (JAR) signatures

apkv1signer signs ZIP archives (APKs, JARs) using the classic v1 (JAR)
signature scheme: it writes a digest manifest (META-INF/MANIFEST.MF), a
signature file (META-INF/CERT.SF) covering the manifest, and a detached PKCS #7
signature (META-INF/CERT.RSA or META-INF/CERT.EC) over the signature file.  It
can also build a signed APK from a directory, show the v1 metadata of an APK,
and verify it.


CLI
===

$ apkv1signer sign --cert CERT --key PRIVKEY [--created-by TEXT] [-v] UNSIGNED_APK OUTPUT_APK
$ apkv1signer build --cert CERT --key PRIVKEY [--created-by TEXT] [-v] INPUT_DIR OUTPUT_APK
$ apkv1signer parse [--json] [--verbose] [--wrap] APK
$ apkv1signer verify [--quiet] [--verbose] APK


API
===

NB: every CLI command maps to an API function: e.g. sign to do_sign().

#>> import apkv1signer
#>> apkv1signer.do_sign(unsigned_apk, output_apk, cert=cert_file, key=key_file)
#>> apkv1signer.do_build(input_dir, output_apk, cert=cert_file, key=key_file)
#>> apkv1signer.do_parse(apk, verbose=True)
#>> apkv1signer.do_verify(apk)


Manifests
---------

>>> import apkv1signer as avs
>>> data = (b"Manifest-Version: 1.0\\r\\nCreated-By: 1.0 (Android SignApk)\\r\\n\\r\\n"
...         b"Name: hello.txt\\r\\nSHA1-Digest: waSWLCdh0QfgCEfQJKyhhqZNcx4=\\r\\n\\r\\n")
>>> mf = avs.Manifest.parse(data)              # parse MANIFEST.MF
>>> mf == avs.parse_manifest(data)             # same as above
True
>>> mf.main.get("Manifest-Version")
'1.0'
>>> mf.names
('hello.txt',)
>>> mf.sections["hello.txt"].lines
('SHA1-Digest: waSWLCdh0QfgCEfQJKyhhqZNcx4=',)
>>> mf.dump() == data
True
>>> mf.dump_entry("hello.txt")
b'Name: hello.txt\\r\\nSHA1-Digest: waSWLCdh0QfgCEfQJKyhhqZNcx4=\\r\\n'

>>> sf = avs.create_signature_file(mf)         # CERT.SF
>>> sf.main.get("SHA1-Digest-Manifest") == mf.digest()
True
>>> sf.sections["hello.txt"].get("SHA1-Digest") == mf.entry_digest("hello.txt")
True


Signing
-------

#>> import apkv1signer
#>> cert = apkv1signer.load_certificate(cert_bytes)     # PEM or DER
#>> key = apkv1signer.load_private_key(key_bytes)       # PKCS #8, PEM or DER
#>> sig = apkv1signer.sign_apk(unsigned_apk, output_apk, cert=cert, key=key)
#>> sig.signature_block_filename
'META-INF/CERT.RSA'
#>> apkv1signer.verify_v1_signature(output_apk).verified_signers
(('...', '...'),)

"""

from __future__ import annotations

import base64
import binascii
import contextlib
import datetime
import functools
import os
import re
import sys
import textwrap
import zipfile
import zlib

from binascii import hexlify
from dataclasses import dataclass, field
from hashlib import sha1, sha224, sha256, sha384, sha512
from typing import (cast, Any, BinaryIO, Callable, Dict, Iterable, Iterator, List,
                    Mapping, Optional, TextIO, Tuple, Type, Union)

import apksigcopier

from apksigcopier import APKSigCopierError
from asn1crypto.keys import PublicKeyInfo as X509CertPubKeyInfo     # type: ignore[import-untyped]
from asn1crypto.x509 import Certificate as X509Cert                 # type: ignore[import-untyped]
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ec import ECDSA, EllipticCurvePrivateKey, EllipticCurvePublicKey
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.hashes import HashAlgorithm, SHA1, SHA224, SHA256, SHA384, SHA512
from cryptography.hazmat.primitives.serialization.pkcs7 import load_der_pkcs7_certificates
from pyasn1.codec.der.decoder import decode as pyasn1_decode
from pyasn1.codec.der.encoder import encode as pyasn1_encode
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ as pyasn1_univ
from pyasn1_modules import rfc2315                                  # type: ignore[import-untyped]

__version__ = "0.1.0"
NAME = "apkv1signer"

Halgo = Union[HashAlgorithm, ECDSA]
HalgoFun = Union[Callable[[], Halgo], Type[HashAlgorithm]]

PrivKey = Union[RSAPrivateKey, EllipticCurvePrivateKey]
PubKey = Union[RSAPublicKey, EllipticCurvePublicKey]

# (ZipInfo, opener) pairs; calling the opener returns a readable binary stream
SourceEntry = Tuple[zipfile.ZipInfo, Callable[[], BinaryIO]]

RFC5480 = dict(
    id_sha224=pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.4"),
    id_sha256=pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.1"),
    id_sha384=pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.2"),
    id_sha512=pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.3"),
    id_sha1=pyasn1_univ.ObjectIdentifier("1.3.14.3.2.26"),
    sha1WithRSAEncryption=pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.1.5"),
    ecdsa_with_SHA1=pyasn1_univ.ObjectIdentifier("1.2.840.10045.4.1"),
)

JAR_HASHERS_OID = {
    # OID                  algo      hasher  halgo
    RFC5480["id_sha224"]: ("SHA224", sha224, SHA224),
    RFC5480["id_sha256"]: ("SHA256", sha256, SHA256),
    RFC5480["id_sha384"]: ("SHA384", sha384, SHA384),
    RFC5480["id_sha512"]: ("SHA512", sha512, SHA512),
    RFC5480["id_sha1"]: ("SHA1", sha1, SHA1),
}
#                  algo  OID    hasher...
JAR_HASHERS_STR = {v[0]: (k,) + v[1:] for k, v in JAR_HASHERS_OID.items()}

# v1 signatures are created with SHA1 to support old Android devices
DIGEST_ALGO = "SHA1"
DIGEST_ATTR = "SHA1-Digest"

DIGEST_ENCRYPTION_ALGORITHM = dict(
    RSA=RFC5480["sha1WithRSAEncryption"],       # 1.2.840.113549.1.1.5
    EC=RFC5480["ecdsa_with_SHA1"],              # 1.2.840.10045.4.1
)

PRIVKEY_TYPE = {RSAPrivateKey: "RSA", EllipticCurvePrivateKey: "EC"}

JAR_DIGEST_HEADER = r"(SHA(?:1|-?(?:224|256|384|512)))-Digest"
JAR_MANIFEST = "META-INF/MANIFEST.MF"
JAR_SIGNATURE_FILE = "META-INF/CERT.SF"
JAR_SIGNATURE_BLOCK_FILE = "META-INF/CERT.{}"
JAR_SBF_EXTS = ("RSA", "DSA", "EC")

# https://docs.oracle.com/javase/8/docs/technotes/guides/jar/jar.html#Signed_JAR_File
# NB: "*" does not match "/"; *.EC is used by ECDSA-signed APKs
EXCLUDED_META = re.compile(r"META-INF/(?:MANIFEST\.MF|[^/]*\.(?:SF|RSA|DSA|EC)|SIG-[^/]*)")

NAME_PREFIX = "Name: "
NEWLINE = b"\r\n"
WRAP_WIDTH = 70         # content bytes per physical line (72 w/ CRLF)

CREATED_BY = "1.0 (Android SignApk)"    # overridden in main() if $APKV1SIGNER_CREATED_BY is set
WRAP_COLUMNS = 80       # overridden in main() if $APKV1SIGNER_WRAP_COLUMNS is set

DATETIMEZERO = (1980, 0, 0, 0, 0, 0)
CHUNK_SIZE = 4096


class APKV1SignerError(Exception):
    """Base class for errors."""


class ParseError(APKV1SignerError):
    """Parse failure."""


class ReadError(APKV1SignerError):
    """Input archive or entry could not be read."""


class WriteError(APKV1SignerError):
    """Output archive or entry could not be written."""


class KeyCertError(APKV1SignerError):
    """Malformed (or encrypted) certificate or private key."""


class SigningError(APKV1SignerError):
    """Signing failure."""


class UnsupportedKeyError(SigningError):
    """Private key is neither RSA nor EC."""


class VerificationError(APKV1SignerError):
    """Verification failure."""


class AssertionFailed(APKV1SignerError):
    """Assertion failure."""


@dataclass(frozen=True)
class APKV1SignerBase:
    """Base class for dataclasses."""

    def for_json(self) -> Mapping[str, Any]:
        """Convert to JSON: dict of all attributes not starting with _, plus _type."""
        d = {k: v for k, v in self.__dict__.items() if not k.startswith("_")}
        return dict(_type=self.__class__.__name__, **d)


@dataclass(frozen=True)
class CertificateInfo(APKV1SignerBase):
    """X.509 certificate info."""
    subject: str
    issuer: str
    serial_number: int
    hash_algorithm: str
    signature_algorithm: str
    not_valid_before: datetime.datetime
    not_valid_after: datetime.datetime
    fingerprint: str


@dataclass(frozen=True)
class PublicKeyInfo(APKV1SignerBase):
    """Public key info."""
    algorithm: str
    bit_size: int
    fingerprint: str
    hash_algorithm: Optional[str]


@dataclass(frozen=True)
class Attributes(APKV1SignerBase):
    """
    Attribute lines of a manifest section.

    Lines are stored verbatim (conventionally "Key: Value") so they round-trip
    byte for byte.

    >>> from apkv1signer import Attributes
    >>> attrs = Attributes(("SHA1-Digest: stale", "X-Custom: 1"))
    >>> attrs.get("X-Custom")
    '1'
    >>> attrs.without("SHA1-Digest").with_line("SHA1-Digest: fresh").lines
    ('X-Custom: 1', 'SHA1-Digest: fresh')
    >>> attrs.without("Nope") == attrs
    True

    """
    lines: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.lines)

    def __iter__(self) -> Iterator[str]:
        return iter(self.lines)

    def without(self, key: str) -> Attributes:
        """Drop the first line with the specified key."""
        prefix = key + ": "
        for i, line in enumerate(self.lines):
            if line.startswith(prefix):
                return Attributes(self.lines[:i] + self.lines[i + 1:])
        return self

    def with_line(self, line: str) -> Attributes:
        return Attributes(self.lines + (line,))

    def get(self, key: str) -> Optional[str]:
        """Value of the first line with the specified key (or None)."""
        prefix = key + ": "
        for line in self.lines:
            if line.startswith(prefix):
                return line[len(prefix):]
        return None

    def items(self) -> Iterator[Tuple[str, str]]:
        """Yield (key, value) for all lines that look like "Key: Value"."""
        for line in self.lines:
            key, sep, value = line.partition(": ")
            if sep:
                yield key, value


@dataclass(frozen=True)
class Manifest(APKV1SignerBase):
    """
    JAR manifest (MANIFEST.MF) or signature file (.SF).

    Maps section names to Attributes; "" is the main section.
    """
    sections: Dict[str, Attributes]

    @property
    def main(self) -> Attributes:
        return self.sections.get("", Attributes())

    @property
    def names(self) -> Tuple[str, ...]:
        """Names of the non-empty, non-main sections, sorted (bytewise)."""
        return tuple(sorted((k for k, v in self.sections.items() if k and v), key=_encode))

    @classmethod
    def parse(_cls, data: bytes) -> Manifest:
        """
        Parse JAR manifest (MANIFEST.MF) or signature file (.SF).

        Uses parse_manifest().
        """
        return parse_manifest(data)

    def dump(self) -> bytes:
        """
        Dump JAR manifest (MANIFEST.MF) or signature file (.SF).

        Uses dump_manifest().
        """
        return dump_manifest(self)

    def dump_entry(self, name: str) -> bytes:
        """
        Dump a single section (starting with its Name: header).

        Uses dump_manifest_entry().
        """
        return dump_manifest_entry(self, name)

    def digest(self) -> str:
        """Base64-encoded SHA1 digest of the serialized manifest."""
        return manifest_digest(self)

    def entry_digest(self, name: str) -> str:
        """Base64-encoded SHA1 digest of the serialized section (w/ separator)."""
        return manifest_entry_digest(self, name)


@dataclass(frozen=True)
class PKCS7AuthenticatedAttributes(APKV1SignerBase):
    """PKCS #7 authenticatedAttributes."""
    raw_data: bytes
    message_digest: bytes


@dataclass(frozen=True)
class PKCS7SignerInfo(APKV1SignerBase):
    """PKCS #7 signerInfo."""
    encrypted_digest: bytes
    digest_algorithm: Optional[str]
    authenticated_attributes: Optional[PKCS7AuthenticatedAttributes]


@dataclass(frozen=True)
class SignatureFile(APKV1SignerBase):
    """JAR signature file (.SF)."""
    raw_data: bytes
    filename: str
    manifest: Manifest


@dataclass(frozen=True)
class SignatureBlockFile(APKV1SignerBase):
    """JAR signature block file (.RSA, .DSA, or .EC)."""
    raw_data: bytes
    filename: str
    _certificate: Any = field(init=False, repr=False, compare=False)    # Any=X509Cert
    _public_key: Any = field(init=False, repr=False, compare=False)     # Any=X509CertPubKeyInfo
    certificate_info: CertificateInfo = field(init=False)
    public_key_info: PublicKeyInfo = field(init=False)
    signer_infos: Tuple[PKCS7SignerInfo, ...] = field(init=False)

    def __post_init__(self) -> None:
        infos, cert = _load_signature_block_file_signer_infos_cert(self.raw_data)
        object.__setattr__(self, "_certificate", cert)
        object.__setattr__(self, "_public_key", self.certificate.public_key)
        object.__setattr__(self, "certificate_info", x509_certificate_info(self.certificate))
        object.__setattr__(self, "public_key_info", public_key_info(self.public_key))
        object.__setattr__(self, "signer_infos", infos)

    @property   # type: ignore[no-any-unimported]
    def certificate(self) -> X509Cert:
        return self._certificate

    @property   # type: ignore[no-any-unimported]
    def public_key(self) -> X509CertPubKeyInfo:
        return self._public_key


@dataclass(frozen=True)
class V1Signature(APKV1SignerBase):
    """Result of signing: the new manifest, signature file, and signature block."""
    manifest: Manifest
    signature_file: Manifest
    signature_file_data: bytes
    signature_block_data: bytes
    signature_block_filename: str


@dataclass(frozen=True)
class V1Metadata(APKV1SignerBase):
    """v1 (JAR) signature metadata files of an APK."""
    manifest: Manifest
    signature_files: Tuple[SignatureFile, ...]
    signature_block_files: Tuple[SignatureBlockFile, ...]


@dataclass(frozen=True)
class V1VerificationResult(APKV1SignerBase):
    """Successful v1 verification: signers and ZIP entries not in the manifest."""
    verified_signers: Tuple[Tuple[str, str], ...]
    unverified: Tuple[str, ...]


class LineWrapWriter:
    """
    Write to sink, splitting any lines exceeding 72 bytes (including the
    terminating CRLF); continuations of a split line are marked with a single
    space.

    The first physical line carries up to 70 content bytes, every continuation
    line the space plus up to 69 more.  CR/LF bytes are passed through
    unmodified and end the current line.  Arbitrary chunking of the written
    data gives the same output as writing it all at once.

    >>> import io
    >>> from apkv1signer import LineWrapWriter
    >>> out = io.BytesIO()
    >>> w = LineWrapWriter(out)
    >>> w.write(b"x" * 150 + b"\\r\\n")
    152
    >>> w.write(b"hello")
    5
    >>> [len(line) for line in out.getvalue().split(b"\\r\\n")]
    [70, 70, 12, 5]
    >>> out.getvalue().split(b"\\r\\n")[2]
    b' xxxxxxxxxxx'

    """

    def __init__(self, sink: Any, width: int = WRAP_WIDTH) -> None:
        self.sink = sink
        self.width = width
        self.column = 0

    def write(self, data: bytes) -> int:
        """Write data; returns the number of bytes of data consumed."""
        n = 0
        while data:
            i = _find_newline(data)
            if i == 0:
                j = len(data) - len(data.lstrip(b"\r\n"))
                self.sink.write(data[:j])
                n += j
                self.column = 0
                data = data[j:]
                continue
            if i == -1:
                i = len(data)
            if self.column == self.width:
                self.sink.write(b"\r\n ")
                self.column = 1
            if self.column + i > self.width:
                i = self.width - self.column
            self.sink.write(data[:i])
            n += i
            self.column += i
            data = data[i:]
        return n


class _HashWriter:
    def __init__(self, hasher: Any) -> None:
        self.hasher = hasher

    def write(self, data: bytes) -> int:
        self.hasher.update(data)
        return len(data)


class _TeeWriter:
    def __init__(self, *sinks: Any) -> None:
        self.sinks = sinks

    def write(self, data: bytes) -> int:
        for sink in self.sinks:
            sink.write(data)
        return len(data)


def _assert(b: bool, what: Optional[str] = None) -> None:
    """
    assert that is not removed with optimization.

    >>> from apkv1signer import _assert, AssertionFailed
    >>> _assert(1 == 1, "all good")
    >>> try:
    ...     _assert(1 == 2, "oops")
    ... except AssertionFailed as e:
    ...     print(e)
    Assertion failed: oops

    """
    if not b:
        raise AssertionFailed("Assertion failed" + (f": {what}" if what else ""))


# FIXME
def _err(*a: str) -> None:
    sys.stdout.flush()  # FIXME
    print(*a, file=sys.stderr)
    sys.stderr.flush()  # FIXME


def _encode(s: str) -> bytes:
    return s.encode("utf-8", "surrogateescape")


def _decode(b: bytes) -> str:
    return b.decode("utf-8", "surrogateescape")


def _find_newline(data: bytes) -> int:
    m = re.search(rb"[\r\n]", data)
    return m.start() if m else -1


def _fn_base(filename: str) -> str:
    return filename.rsplit(".", 1)[0]


def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode()


@contextlib.contextmanager
def _reading(what: str) -> Iterator[None]:
    try:
        yield
    except (OSError, EOFError, NotImplementedError, zipfile.BadZipFile, zlib.error) as e:
        raise ReadError(f"Cannot read {what!r}: {e}") from e


@contextlib.contextmanager
def _writing(what: str) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        raise WriteError(f"Cannot write {what!r}: {e}") from e


def is_excluded(filename: str) -> bool:
    """
    Whether filename is existing v1 signature metadata: it is not digested and
    not copied to the signed output (which gets freshly generated metadata).

    >>> from apkv1signer import is_excluded
    >>> [is_excluded(fn) for fn in ("META-INF/MANIFEST.MF", "META-INF/CERT.SF",
    ...                             "META-INF/CERT.RSA", "META-INF/FOO.SF",
    ...                             "META-INF/SIG-BAR", "META-INF/X.EC")]
    [True, True, True, True, True, True]
    >>> [is_excluded(fn) for fn in ("META-INF/other.txt", "assets/x.png",
    ...                             "META-INF/manifest.mf", "META-INF/a/B.SF")]
    [False, False, False, False]

    """
    return EXCLUDED_META.fullmatch(filename) is not None


def is_signable(info: zipfile.ZipInfo) -> bool:
    """Whether the ZIP entry is to be digested and copied (not a dir, not excluded)."""
    return not (info.is_dir() or is_excluded(info.filename))


def parse_manifest(data: bytes) -> Manifest:
    """
    Parse JAR manifest (MANIFEST.MF) or signature file (.SF).

    Lenient: lines that are not blank, a Name: header, or a continuation are
    kept as attribute lines verbatim; sections without attributes are dropped.

    >>> from apkv1signer import parse_manifest
    >>> mf = parse_manifest(b"Manifest-Version: 1.0\\n\\nName: res/a\\n .xml\\n"
    ...                     b"SHA1-Digest: abc\\n def\\n\\nName: empty\\n")
    >>> mf.sections["res/a.xml"].lines
    ('SHA1-Digest: abcdef',)
    >>> sorted(mf.sections)
    ['', 'res/a.xml']

    """
    return Manifest({name: attrs for name, attrs, _ in manifest_sections(data)})


def manifest_sections(data: bytes) -> Tuple[Tuple[str, Attributes, bytes], ...]:
    """
    Split JAR manifest (or signature file) into (name, attributes, raw_data)
    triples, in file order; raw_data contains the exact bytes of the section,
    including its terminating blank line.
    """
    return tuple(_manifest_sections(data))


def _manifest_sections(data: bytes) -> Iterator[Tuple[str, Attributes, bytes]]:
    name, raw = bytearray(), bytearray()
    attrs: List[bytearray] = []
    # None marks the end of input (an implicit blank line)
    for raw_line in _chain_end(data.splitlines(keepends=True)):
        line = raw_line.rstrip(b"\r\n") if raw_line is not None else b""
        if not line:
            if attrs:
                if raw_line is not None:
                    raw += raw_line
                yield _decode(name), Attributes(tuple(_decode(a) for a in attrs)), bytes(raw)
                name, attrs, raw = bytearray(), [], bytearray()
            elif name and raw_line is not None:
                raw += raw_line
            continue
        raw += raw_line
        if line.startswith(NAME_PREFIX.encode()):
            name = bytearray(line[len(NAME_PREFIX):])
        elif line.startswith(b" "):
            if attrs:
                attrs[-1] += line[1:]
            else:
                name += line[1:]
        else:
            attrs.append(bytearray(line))


def _chain_end(lines: List[bytes]) -> Iterator[Optional[bytes]]:
    yield from lines
    yield None


def write_manifest(manifest: Manifest, sink: Any) -> int:
    """
    Write JAR manifest (or signature file) to sink (anything with a .write()
    method taking bytes), wrapping lines using LineWrapWriter.

    Writes the main section, then each non-empty section (sorted by name)
    preceded by a blank line, then a final blank line.

    Returns the number of (unwrapped) bytes written.
    """
    w = LineWrapWriter(sink)
    n = sum(w.write(_encode(line) + NEWLINE) for line in manifest.main)
    for name in manifest.names:
        n += w.write(NEWLINE)
        n += _write_entry(manifest, name, w)
    return n + w.write(NEWLINE)


def write_manifest_entry(manifest: Manifest, name: str, sink: Any) -> int:
    """
    Write a single section (Name: header plus attributes, no separator) to
    sink, wrapping lines using LineWrapWriter.
    """
    return _write_entry(manifest, name, LineWrapWriter(sink))


def _write_entry(manifest: Manifest, name: str, w: LineWrapWriter) -> int:
    n = w.write(_encode(NAME_PREFIX + name) + NEWLINE)
    for line in manifest.sections.get(name, ()):
        n += w.write(_encode(line) + NEWLINE)
    return n


def dump_manifest(manifest: Manifest) -> bytes:
    """Dump JAR manifest (MANIFEST.MF) or signature file (.SF)."""
    out: List[bytes] = []
    write_manifest(manifest, _ListWriter(out))
    return b"".join(out)


def dump_manifest_entry(manifest: Manifest, name: str) -> bytes:
    """Dump a single section of a JAR manifest (or signature file)."""
    out: List[bytes] = []
    write_manifest_entry(manifest, name, _ListWriter(out))
    return b"".join(out)


class _ListWriter:
    def __init__(self, out: List[bytes]) -> None:
        self.out = out

    def write(self, data: bytes) -> int:
        self.out.append(data)
        return len(data)


def file_digest(fh: BinaryIO, hasher: Any = sha1) -> str:
    """Base64-encoded digest of the (remaining) contents of fh."""
    h = hasher()
    while data := fh.read(CHUNK_SIZE):
        h.update(data)
    return _b64(h.digest())


def manifest_digest(manifest: Manifest) -> str:
    """Base64-encoded SHA1 digest of the serialized manifest."""
    h = sha1()
    write_manifest(manifest, _HashWriter(h))
    return _b64(h.digest())


def manifest_entry_digest(manifest: Manifest, name: str) -> str:
    """
    Base64-encoded SHA1 digest of the serialized section for name, including
    the blank line that terminates it.
    """
    h = sha1()
    w = LineWrapWriter(_HashWriter(h))
    _write_entry(manifest, name, w)
    w.write(NEWLINE)
    return _b64(h.digest())


def default_manifest(*, created_by: Optional[str] = None) -> Manifest:
    """New manifest with only a main section."""
    return Manifest({"": Attributes((
        "Manifest-Version: 1.0",
        f"Created-By: {created_by or CREATED_BY}",
    ))})


def create_signature_file(manifest: Manifest, *, created_by: Optional[str] = None,
                          digest: Optional[str] = None) -> Manifest:
    """
    Create JAR signature file (.SF) for manifest: its main section has the
    digest of the whole serialized manifest (digest, when already computed),
    each section the digest of the serialized manifest section.
    """
    sections = {"": Attributes((
        "Signature-Version: 1.0",
        f"Created-By: {created_by or CREATED_BY}",
        f"{DIGEST_ATTR}-Manifest: {digest or manifest_digest(manifest)}",
    ))}
    for name in manifest.names:
        sections[name] = Attributes((f"{DIGEST_ATTR}: {manifest_entry_digest(manifest, name)}",))
    return Manifest(sections)


def key_algorithm(key: Any) -> str:
    """
    Key algorithm ("RSA" or "EC"); raises UnsupportedKeyError otherwise.

    >>> from apkv1signer import key_algorithm
    >>> try:
    ...     key_algorithm(object())
    ... except Exception as e:
    ...     print(e)
    Unsupported private key type: object

    """
    for cls, alg in PRIVKEY_TYPE.items():
        if isinstance(key, cls):
            return alg
    raise UnsupportedKeyError(f"Unsupported private key type: {key.__class__.__name__}")


def load_certificate(data: bytes, filename: Optional[str] = None) -> bytes:
    """Load X.509 certificate (PEM or DER); returns it in DER form."""
    what = filename or "certificate"
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            crt = x509.load_pem_x509_certificate(data)
        else:
            crt = x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise KeyCertError(f"{what}: {e}")     # pylint: disable=W0707
    return crt.public_bytes(serialization.Encoding.DER)


def load_private_key(data: bytes, filename: Optional[str] = None) -> PrivKey:
    """
    Load unencrypted PKCS #8 private key (PEM or DER).

    Raises KeyCertError when the key is malformed or encrypted,
    UnsupportedKeyError when it is neither RSA nor EC.
    """
    what = filename or "private key"
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            key = serialization.load_pem_private_key(data, None)
        else:
            key = serialization.load_der_private_key(data, None)
    except TypeError as e:
        raise KeyCertError(f"{what}: encrypted private keys are not supported ({e})")  # pylint: disable=W0707
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyCertError(f"{what}: {e}")     # pylint: disable=W0707
    key_algorithm(key)
    return cast(PrivKey, key)


# FIXME: type checking?!
def create_signature(key: PrivKey, msg: bytes, halgo: HalgoFun) -> bytes:
    """
    Create signature from key on message (msg) using appropriate hashing
    algorithm (and PKCS #1 v1.5 padding for RSA).
    """
    algorithm = halgo()
    if isinstance(key, RSAPrivateKey):
        assert isinstance(algorithm, HashAlgorithm)
        return key.sign(msg, PKCS1v15(), algorithm)
    assert isinstance(algorithm, ECDSA)
    return key.sign(msg, algorithm)


# FIXME: type checking?!
def verify_signature(key: PubKey, sig: bytes, msg: bytes, halgo: HalgoFun) -> None:
    """
    Verify signature (sig) from key on message (msg) using appropriate hashing
    algorithm (and PKCS #1 v1.5 padding for RSA).

    Raises VerificationError (as a result of InvalidSignature) on failure.
    """
    algorithm = halgo()
    try:
        if isinstance(key, RSAPublicKey):
            assert isinstance(algorithm, HashAlgorithm)
            key.verify(sig, msg, PKCS1v15(), algorithm)
        elif isinstance(key, EllipticCurvePublicKey):
            assert isinstance(algorithm, ECDSA)
            key.verify(sig, msg, algorithm)
        else:
            raise VerificationError(f"Unsupported public key type: {key.__class__.__name__}")
    except InvalidSignature:
        raise VerificationError("Invalid signature")    # pylint: disable=W0707


# https://www.rfc-editor.org/rfc/rfc2315
def create_signature_block_file(data: bytes, *, cert: bytes, key: PrivKey) -> Tuple[bytes, str]:
    """
    Create a detached PKCS #7 signature (signature block file) over data (the
    serialized signature file), embedding cert (DER).

    Returns (signature_block_data, algorithm); algorithm ("RSA" or "EC") is also
    the file extension.
    """
    def halgo_f() -> Halgo:
        return ECDSA(halgo()) if alg == "EC" else halgo()
    alg = key_algorithm(key)
    oid, _, halgo = JAR_HASHERS_STR[DIGEST_ALGO]
    try:
        crt = pyasn1_decode(cert, asn1Spec=rfc2315.Certificate())[0]
    except PyAsn1Error as e:
        raise KeyCertError(f"Failed to parse certificate: {e}")    # pylint: disable=W0707
    sig = create_signature(key, data, halgo_f)
    sdat = rfc2315.SignedData()
    sdat["version"] = 1
    sdat["digestAlgorithms"][0]["algorithm"] = oid
    sdat["contentInfo"] = rfc2315.ContentInfo()
    sdat["contentInfo"]["contentType"] = rfc2315.ContentType(rfc2315.data)
    sdat["certificates"][0]["certificate"] = crt
    sinf = sdat["signerInfos"][0]
    sinf["version"] = 1
    sinf["issuerAndSerialNumber"]["issuer"] = crt["tbsCertificate"]["issuer"]
    sinf["issuerAndSerialNumber"]["serialNumber"] = crt["tbsCertificate"]["serialNumber"]
    sinf["digestAlgorithm"]["algorithm"] = oid
    sinf["digestEncryptionAlgorithm"]["algorithm"] = DIGEST_ENCRYPTION_ALGORITHM[alg]
    sinf["encryptedDigest"] = sig
    cinf = rfc2315.ContentInfo()
    cinf["contentType"] = rfc2315.ContentType(rfc2315.signedData)
    cinf["content"] = pyasn1_univ.Any(pyasn1_encode(sdat))
    return pyasn1_encode(cinf), alg


def _load_signature_block_file_signer_infos_cert(    # type: ignore[no-any-unimported]
        data: bytes) -> Tuple[Tuple[PKCS7SignerInfo, ...], X509Cert]:
    signer_infos = []
    try:
        cinf = pyasn1_decode(data, asn1Spec=rfc2315.ContentInfo())[0]
        _assert(cinf["contentType"] == rfc2315.signedData,
                "signature block file PKCS #7 contentType must be signedData")
        sdat = pyasn1_decode(cinf["content"], asn1Spec=rfc2315.SignedData())[0]
        for sinf in sdat["signerInfos"]:
            dalg = sinf["digestAlgorithm"]["algorithm"]
            attr = sinf["authenticatedAttributes"]
            edig = sinf["encryptedDigest"].asOctets()
            algo = JAR_HASHERS_OID.get(dalg, [None])[0]
            signer_infos.append(PKCS7SignerInfo(edig, algo, _parse_auth_attrs(attr)))
    except PyAsn1Error:
        raise ParseError("Failed to parse signature block file PKCS #7 data")   # pylint: disable=W0707
    try:
        certs = load_der_pkcs7_certificates(data)
    except ValueError as e:
        raise ParseError(f"Failed to load signature block file certificates: {e}")  # pylint: disable=W0707
    _assert(len(certs) == 1, "signature block file must contain exactly 1 certificate")
    return tuple(signer_infos), X509Cert.load(certs[0].public_bytes(serialization.Encoding.DER))


def _parse_auth_attrs(  # type: ignore[no-any-unimported]
        attr: rfc2315.Attributes) -> Optional[PKCS7AuthenticatedAttributes]:
    if not len(attr):   # pylint: disable=C1802
        return None
    id_contentType = pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.9.3")
    id_messageDigest = pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.9.4")
    _assert(len(attr) >= 2, "PKCS #7 authenticatedAttributes must contain at least 2 attributes")
    ctypes = [a for a in attr if a["type"] == id_contentType]
    mdigests = [a for a in attr if a["type"] == id_messageDigest]
    _assert(len(ctypes) == 1, "PKCS #7 authenticatedAttributes must contain exactly 1 "
                              "PKCS #9 contentType attribute")
    _assert(len(mdigests) == 1, "PKCS #7 authenticatedAttributes must contain exactly 1 "
                                "PKCS #9 messageDigest attribute")
    _assert(len(ctypes[0]["values"]) == 1, "PKCS #9 contentType attribute must contain exactly 1 value")
    _assert(len(mdigests[0]["values"]) == 1, "PKCS #9 messageDigest attribute must contain exactly 1 value")
    ctype = pyasn1_decode(ctypes[0]["values"][0], asn1Spec=rfc2315.ContentType())[0]
    digest = pyasn1_decode(mdigests[0]["values"][0])[0].asOctets()
    _assert(ctype == rfc2315.data, "PKCS #9 contentType must be PKCS #7 data")
    data = pyasn1_univ.SetOf()
    data.extend(attr)
    return PKCS7AuthenticatedAttributes(pyasn1_encode(data), digest)


def x509_certificate_info(cert: X509Cert) -> CertificateInfo:   # type: ignore[no-any-unimported]
    """X.509 certificate info."""
    return CertificateInfo(
        subject=cert.subject.human_friendly,
        issuer=cert.issuer.human_friendly,
        serial_number=cert.serial_number,
        hash_algorithm=cert.hash_algo.upper(),
        signature_algorithm=cert.signature_algo.upper(),
        not_valid_before=cert.not_valid_before,
        not_valid_after=cert.not_valid_after,
        fingerprint=cert.sha256_fingerprint.replace(" ", "").lower())


def public_key_info(key: X509CertPubKeyInfo) -> PublicKeyInfo:  # type: ignore[no-any-unimported]
    """Public key info."""
    try:
        algo = key.hash_algo.upper()
    except ValueError:
        algo = None
    return PublicKeyInfo(
        algorithm=key.algorithm.upper(),
        bit_size=key.bit_size,
        fingerprint=sha256(key.dump()).hexdigest(),
        hash_algorithm=algo)


def sign_apk(unsigned_apk: str, output_apk: str, *, cert: bytes, key: PrivKey,
             created_by: Optional[str] = None, verbose: bool = False) -> V1Signature:
    """
    Sign unsigned_apk using a v1 (JAR) signature and save as output_apk.

    Existing v1 metadata in unsigned_apk is replaced; the main section and any
    non-digest attributes of its manifest are kept.

    NB: output_apk is left behind (and invalid) when signing fails.
    """
    key_algorithm(key)
    with _reading(unsigned_apk):
        zf_in = zipfile.ZipFile(unsigned_apk, "r")
    with zf_in:
        entries = tuple((info, functools.partial(zf_in.open, info))
                        for info in zf_in.infolist())
        with _writing(output_apk), zipfile.ZipFile(output_apk, "w") as zf_out:
            return sign_entries(entries, zf_out, cert=cert, key=key,
                                created_by=created_by, verbose=verbose)


def build_signed_apk(input_dir: str, output_apk: str, *, cert: bytes, key: PrivKey,
                     created_by: Optional[str] = None, verbose: bool = False) -> V1Signature:
    """
    Create output_apk from the files in input_dir, signed using a v1 (JAR)
    signature.

    Files are added DEFLATE-compressed with a zero timestamp;
    META-INF/MANIFEST.MF in input_dir (if any) is used as the existing manifest.
    """
    key_algorithm(key)
    entries = tuple(_dir_entries(input_dir))
    with _writing(output_apk), zipfile.ZipFile(output_apk, "w") as zf_out:
        return sign_entries(entries, zf_out, cert=cert, key=key,
                            created_by=created_by, verbose=verbose)


def _dir_entries(input_dir: str) -> Iterator[SourceEntry]:
    with _reading(input_dir):
        walk = [(d, sorted(fs)) for d, _, fs in os.walk(input_dir, onerror=_raise)]
    for dirpath, filenames in walk:
        for fn in filenames:
            path = os.path.join(dirpath, fn)
            arcname = os.path.relpath(path, input_dir).replace(os.sep, "/")
            with _reading(path):
                info = zipfile.ZipInfo.from_file(path, arcname)
            if info.is_dir():
                continue
            info.date_time = DATETIMEZERO
            info.compress_type = zipfile.ZIP_DEFLATED
            yield info, functools.partial(open, path, "rb")


def _raise(e: OSError) -> None:
    raise e


def sign_entries(entries: Iterable[SourceEntry], zf_out: zipfile.ZipFile, *,
                 cert: bytes, key: PrivKey, created_by: Optional[str] = None,
                 verbose: bool = False) -> V1Signature:
    """
    Sign source entries: write META-INF/MANIFEST.MF, META-INF/CERT.SF, and
    META-INF/CERT.RSA (or .EC) to zf_out, followed by all signable entries
    (sorted by name, keeping their compression method and attributes).

    Entries are (ZipInfo, opener) pairs; existing v1 metadata entries and
    directories are skipped.
    """
    alg = key_algorithm(key)
    entries = sorted(entries, key=lambda e: _encode(e[0].filename))
    filenames = [info.filename for info, _ in entries]
    if len(set(filenames)) != len(filenames):
        raise SigningError("Duplicate ZIP entries")
    signable = [(info, opener) for info, opener in entries if is_signable(info)]
    for info, _ in entries:
        if info.flag_bits & 0x1 and (info.filename == JAR_MANIFEST or is_signable(info)):
            raise ReadError(f"Cannot read {info.filename!r}: encrypted entries are not supported")
    for info, _ in signable:
        if _find_newline(_encode(info.filename)) != -1:
            raise SigningError(f"Unsupported entry name: {info.filename!r}")
    old_manifest = _read_old_manifest(entries, created_by=created_by)
    sections = {"": old_manifest.main}
    for info, opener in signable:
        if verbose:
            print("#", info.filename)
        with _reading(info.filename), opener() as fh:
            digest = file_digest(fh)
        old_attrs = old_manifest.sections.get(info.filename, Attributes())
        sections[info.filename] = _without_digests(old_attrs).with_line(f"{DIGEST_ATTR}: {digest}")
    manifest = Manifest(sections)
    h = sha1()
    with _writing(JAR_MANIFEST), zf_out.open(_meta_info(JAR_MANIFEST), "w") as fh:
        write_manifest(manifest, _TeeWriter(fh, _HashWriter(h)))
    if verbose:
        print("+", JAR_MANIFEST)
    sf = create_signature_file(manifest, created_by=created_by, digest=_b64(h.digest()))
    sf_data = sf.dump()
    _write_meta(zf_out, JAR_SIGNATURE_FILE, sf_data, verbose=verbose)
    sbf_data, _ = create_signature_block_file(sf_data, cert=cert, key=key)
    sbf_filename = JAR_SIGNATURE_BLOCK_FILE.format(alg)
    _write_meta(zf_out, sbf_filename, sbf_data, verbose=verbose)
    for info, opener in signable:
        _copy_entry(info, opener, zf_out)
        if verbose:
            print("+", info.filename)
    return V1Signature(manifest=manifest, signature_file=sf, signature_file_data=sf_data,
                       signature_block_data=sbf_data, signature_block_filename=sbf_filename)


def _without_digests(attrs: Attributes) -> Attributes:
    """Drop all digest lines (SHA1-Digest, SHA-256-Digest, ...)."""
    return Attributes(tuple(line for line in attrs
                            if not re.fullmatch(JAR_DIGEST_HEADER, line.partition(": ")[0])))


def _read_old_manifest(entries: Iterable[SourceEntry], *,
                       created_by: Optional[str]) -> Manifest:
    for info, opener in entries:
        if info.filename == JAR_MANIFEST:
            with _reading(info.filename), opener() as fh:
                return parse_manifest(fh.read())
    return default_manifest(created_by=created_by)


def _meta_info(filename: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(filename, date_time=DATETIMEZERO)
    info.compress_type = zipfile.ZIP_DEFLATED
    return info


def _write_meta(zf_out: zipfile.ZipFile, filename: str, data: bytes, *,
                verbose: bool = False) -> None:
    with _writing(filename):
        zf_out.writestr(_meta_info(filename), data)
    if verbose:
        print("+", filename)


def _copy_entry(info: zipfile.ZipInfo, opener: Callable[[], BinaryIO],
                zf_out: zipfile.ZipFile) -> None:
    out_info = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    out_info.compress_type = info.compress_type
    out_info.create_system = info.create_system
    out_info.external_attr = info.external_attr
    out_info.comment = info.comment
    out_info.file_size = info.file_size
    with _reading(info.filename):
        fh = opener()
    with fh, _writing(info.filename), zf_out.open(out_info, "w") as out:
        while True:
            with _reading(info.filename):
                data = fh.read(CHUNK_SIZE)
            if not data:
                break
            out.write(data)


def extract_meta(signed_apk: str) -> Tuple[Tuple[zipfile.ZipInfo, bytes], ...]:
    """
    Extract v1 signature metadata files from signed APK.

    Returns a tuple of (ZipInfo, data) pairs.

    Uses apksigcopier.extract_meta().
    """
    return tuple(apksigcopier.extract_meta(signed_apk))


def parse_v1_metadata(signed_apk: str) -> V1Metadata:
    """Parse v1 signature metadata files (manifest, .SF, .RSA/.DSA/.EC) from APK."""
    manifest = None
    sig_files = {}
    sig_block_files = {}
    for info, data in extract_meta(signed_apk):
        if info.filename == JAR_MANIFEST:
            _assert(manifest is None, "duplicate manifest")
            manifest = parse_manifest(data)
        elif info.filename.endswith(".SF"):
            sig_files[_fn_base(info.filename)] = SignatureFile(
                raw_data=data, filename=info.filename, manifest=parse_manifest(data))
        elif any(info.filename.endswith(f".{ext}") for ext in JAR_SBF_EXTS):
            sig_block_files[_fn_base(info.filename)] = SignatureBlockFile(
                raw_data=data, filename=info.filename)
    if manifest is None:
        raise ParseError("Missing manifest")
    if sorted(sig_files) != sorted(sig_block_files):
        raise ParseError("Signature files and signature block files must match")
    return V1Metadata(manifest=manifest,
                      signature_files=tuple(sig_files[k] for k in sorted(sig_files)),
                      signature_block_files=tuple(sig_block_files[k] for k in sorted(sig_files)))


def _digests(attrs: Attributes, suffix: str = "") -> Iterator[Tuple[str, str]]:
    for k, v in attrs.items():
        if m := re.fullmatch(JAR_DIGEST_HEADER + suffix, k):
            try:
                base64.b64decode(v, validate=True)
            except binascii.Error:
                raise VerificationError(f"Invalid base64 digest: {v!r}")   # pylint: disable=W0707
            yield m[1].replace("-", ""), v


# FIXME: certificate chains are not validated
def verify_v1_signature(apkfile: str) -> V1VerificationResult:
    """
    Verify v1 (JAR) signature of apkfile: signature block file(s) over
    signature file(s), signature file digests over the manifest (sections), and
    manifest digests over the ZIP entries.

    Raises VerificationError on failure.
    """
    meta = parse_v1_metadata(apkfile)
    if not meta.signature_files:
        raise VerificationError("No signature files")
    mf_raw = dict(_raw_meta(apkfile, JAR_MANIFEST))
    sections = {name: (attrs, raw) for name, attrs, raw in manifest_sections(mf_raw[JAR_MANIFEST])
                if name}
    verified = []
    for sf, sbf in zip(meta.signature_files, meta.signature_block_files):
        _verify_signature_block_file(sf, sbf)
        for algo, digest in _digests(sf.manifest.main, "-Manifest"):
            hasher = JAR_HASHERS_STR[algo][1]
            if digest != _b64(hasher(mf_raw[JAR_MANIFEST]).digest()):
                raise VerificationError(f"Manifest {algo} digest mismatch in {sf.filename!r}")
        for name in sf.manifest.names:
            if name not in sections:
                raise VerificationError(f"Signature file entry not in manifest: {name!r}")
            entry_digests = tuple(_digests(sf.manifest.sections[name]))
            if not entry_digests:
                raise VerificationError(f"No digests for {name!r} in {sf.filename!r}")
            for algo, digest in entry_digests:
                hasher = JAR_HASHERS_STR[algo][1]
                if digest != _b64(hasher(sections[name][1]).digest()):
                    err = f"Manifest entry {algo} digest mismatch for {name!r} in {sf.filename!r}"
                    raise VerificationError(err)
        if set(sections) - set(sf.manifest.names):
            raise VerificationError(f"Manifest entries missing from {sf.filename!r}")
        verified.append((sbf.certificate_info.fingerprint, sbf.public_key_info.fingerprint))
    with _reading(apkfile), zipfile.ZipFile(apkfile, "r") as zf:
        infos = {info.filename: info for info in zf.infolist()}
        if len(infos) != len(zf.infolist()):
            raise VerificationError("Duplicate ZIP entries")
        for name, (attrs, _) in sections.items():
            if name not in infos:
                raise VerificationError(f"Manifest entry not in ZIP: {name!r}")
            entry_digests = tuple(_digests(attrs))
            if not entry_digests:
                raise VerificationError(f"No digests for {name!r} in manifest")
            if infos[name].flag_bits & 0x1:
                raise ReadError(f"Cannot read {name!r}: encrypted entries are not supported")
            for algo, digest in entry_digests:
                with _reading(name), zf.open(infos[name]) as fh:
                    if digest != file_digest(fh, JAR_HASHERS_STR[algo][1]):
                        raise VerificationError(f"ZIP entry {algo} digest mismatch for {name!r}")
        unverified = tuple(sorted(set(infos) - set(sections), key=_encode))
        for name in unverified:
            if is_signable(infos[name]):
                raise VerificationError(f"ZIP entry not in manifest: {name!r}")
    return V1VerificationResult(verified_signers=tuple(verified), unverified=unverified)


def _raw_meta(apkfile: str, *filenames: str) -> Iterator[Tuple[str, bytes]]:
    for info, data in extract_meta(apkfile):
        if info.filename in filenames:
            yield info.filename, data


def _verify_signature_block_file(sf: SignatureFile, sbf: SignatureBlockFile) -> None:
    if not sbf.signer_infos:
        raise VerificationError(f"No signer infos in {sbf.filename!r}")
    pubkey = serialization.load_der_public_key(sbf.public_key.dump())
    is_ec = sbf.public_key_info.algorithm == "EC"
    for sinfo in sbf.signer_infos:
        if (algo := sinfo.digest_algorithm) is None:
            raise VerificationError(f"Unknown hash algorithm in {sbf.filename!r}")
        _, hasher, halgo = JAR_HASHERS_STR[algo]

        def halgo_f() -> Halgo:
            return ECDSA(halgo()) if is_ec else halgo()
        if sinfo.authenticated_attributes:
            if sinfo.authenticated_attributes.message_digest != hasher(sf.raw_data).digest():
                raise VerificationError(f"Authenticated attributes digest mismatch in {sbf.filename!r}")
            msg = sinfo.authenticated_attributes.raw_data
        else:
            msg = sf.raw_data
        verify_signature(cast(PubKey, pubkey), sinfo.encrypted_digest, msg, halgo_f)


def show_v1_metadata(meta: V1Metadata, *, file: TextIO = sys.stdout,
                     verbose: bool = False, wrap: bool = False) -> None:
    """Print V1Metadata parse tree (w/ indent etc.) to file (stdout)."""
    show_manifest(meta.manifest, "JAR MANIFEST", file=file, verbose=verbose, wrap=wrap)
    for sf in meta.signature_files:
        show_manifest(sf.manifest, "JAR SIGNATURE FILE", filename=sf.filename,
                      file=file, verbose=verbose, wrap=wrap)
    for sbf in meta.signature_block_files:
        show_signature_block_file(sbf, file=file, verbose=verbose, wrap=wrap)


def show_manifest(manifest: Manifest, title: str, *, filename: Optional[str] = None,
                  file: TextIO = sys.stdout, verbose: bool = False,
                  wrap: bool = False) -> None:
    """Print Manifest parse tree (w/ indent etc.) to file (stdout)."""
    p = _printer(file, wrap)
    p(title)
    if filename is not None:
        p("  FILENAME:", repr(filename)[1:-1])
    for line in manifest.main:
        p("  " + line)
    p("  ENTRIES:", len(manifest.names))
    if verbose:
        for i, name in enumerate(manifest.names):
            p("  ENTRY", i)
            p("    NAME:", repr(name)[1:-1])
            for line in manifest.sections[name]:
                p("    " + line)


def show_signature_block_file(sbf: SignatureBlockFile, *, file: TextIO = sys.stdout,
                              verbose: bool = False, wrap: bool = False) -> None:
    """Print SignatureBlockFile parse tree (w/ indent etc.) to file (stdout)."""
    p = _printer(file, wrap)
    p("JAR SIGNATURE BLOCK FILE")
    p("  FILENAME:", repr(sbf.filename)[1:-1])
    p("  CERTIFICATE")
    info, pk_info = sbf.certificate_info, sbf.public_key_info
    p("    X.509 SUBJECT:", info.subject)
    if verbose:
        p("    X.509 ISSUER:", info.issuer)
        p("    X.509 SERIAL NUMBER:", hex(info.serial_number))
        p("    X.509 VALIDITY (NOT BEFORE):", info.not_valid_before)
        p("    X.509 VALIDITY (NOT AFTER):", info.not_valid_after)
    p("    X.509 SHA256 FINGERPRINT (HEX):", info.fingerprint)
    p("    PUBLIC KEY ALGORITHM:", pk_info.algorithm)
    p("    PUBLIC KEY BIT SIZE:", pk_info.bit_size)
    p("    PUBLIC KEY SHA256 FINGERPRINT (HEX):", pk_info.fingerprint)
    for i, sinfo in enumerate(sbf.signer_infos):
        p("  SIGNER INFO", i)
        p("    DIGEST ALGORITHM:", sinfo.digest_algorithm or "UNKNOWN")
        p("    AUTHENTICATED ATTRIBUTES:", "yes" if sinfo.authenticated_attributes else "no")
        if verbose:
            p("    ENCRYPTED DIGEST:", hexlify(sinfo.encrypted_digest).decode())


def _printer(file: TextIO, wrap: bool) -> Callable[..., None]:
    def p(*a: Any) -> None:
        print(_wrap(" ".join(map(str, a)), wrap=wrap), file=file)
    return p


def _wrap(s: str, indent: Optional[int] = None, wrap: bool = True) -> str:
    if not wrap:
        return s
    i = len(re.split("^( *)", s, 1)[1]) if indent is None else indent
    return "\n".join(textwrap.wrap(s, width=WRAP_COLUMNS, subsequent_indent=" " * (i + 2)))


def show_json(obj: APKV1SignerBase, *, file: TextIO = sys.stdout) -> None:
    """Print parse tree as JSON to file (stdout)."""
    import simplejson   # FIXME: casting None to str because of wrong type stub
    simplejson.dump(obj, file, indent=2, sort_keys=True, encoding=cast(str, None),
                    default=json_dump_default, for_json=True)
    print(file=file)


def json_dump_default(obj: Any) -> str:
    """
    Returns serializable versions of bytes (hex str) and datetime.datetime (str)
    for simplejson.dump().

    >>> import io, simplejson
    >>> from apkv1signer import json_dump_default
    >>> out = io.StringIO()
    >>> simplejson.dump(dict(foo=b"bar"), out, encoding=None, default=json_dump_default)
    >>> print(out.getvalue())
    {"foo": "626172"}

    """
    if isinstance(obj, bytes):
        return hexlify(obj).decode()
    if isinstance(obj, datetime.datetime):
        return str(obj)
    raise TypeError(repr(obj) + " is not JSON serializable")


def _read_file(filename: str) -> bytes:
    with _reading(filename), open(filename, "rb") as fh:
        return fh.read()


def _load_cert_and_key(cert: str, key: str) -> Tuple[bytes, PrivKey]:
    return (load_certificate(_read_file(cert), cert),
            load_private_key(_read_file(key), key))


def do_sign(unsigned_apk: str, output_apk: str, *, cert: str, key: str,
            created_by: Optional[str] = None, verbose: bool = False) -> None:
    """
    Sign unsigned_apk using a v1 (JAR) signature -- using cert as the
    certificate file and key as the (unencrypted PKCS #8) private key file --
    and save as output_apk.
    """
    cert_bytes, privkey = _load_cert_and_key(cert, key)
    sign_apk(unsigned_apk, output_apk, cert=cert_bytes, key=privkey,
             created_by=created_by, verbose=verbose)


def do_build(input_dir: str, output_apk: str, *, cert: str, key: str,
             created_by: Optional[str] = None, verbose: bool = False) -> None:
    """
    Create output_apk from the files in input_dir, signed using a v1 (JAR)
    signature (see do_sign()).
    """
    cert_bytes, privkey = _load_cert_and_key(cert, key)
    build_signed_apk(input_dir, output_apk, cert=cert_bytes, key=privkey,
                     created_by=created_by, verbose=verbose)


def do_parse(apk: str, *, json: bool = False, verbose: bool = False,
             wrap: bool = False) -> None:
    """
    Parse APK v1 (JAR) signature metadata files and output a parse tree
    (indented with spaces) or JSON (when json=True).
    """
    meta = parse_v1_metadata(apk)
    if json:
        show_json(meta, file=sys.stdout)
    else:
        show_v1_metadata(meta, file=sys.stdout, verbose=verbose, wrap=wrap)


def do_verify(apk: str, *, quiet: bool = False, verbose: bool = False) -> None:
    """
    Verify APK v1 (JAR) signature.

    Prints "v1 verified" (unless quiet=True) and the signers (when
    verbose=True).  Raises VerificationError on failure.
    """
    try:
        result = verify_v1_signature(apk)
    except VerificationError as e:
        if not quiet:
            print(f"v1 not verified ({e})")
        raise
    if not quiet:
        print("v1 verified")
        if verbose:
            for cert, pubkey in result.verified_signers:
                print(f"signer: {cert}:{pubkey}")


def main() -> None:
    """CLI; requires click."""

    global CREATED_BY, WRAP_COLUMNS
    if created_by := os.environ.get("APKV1SIGNER_CREATED_BY", ""):
        CREATED_BY = created_by
    if (columns := os.environ.get("APKV1SIGNER_WRAP_COLUMNS", "")).isdigit():
        WRAP_COLUMNS = int(columns)

    import click

    @click.group(help="""
        apkv1signer - create/parse/verify android apk v1 (JAR) signatures
    """)
    @click.version_option(__version__)
    def cli() -> None:
        pass

    @cli.command(help="""
        Sign APK (or JAR) using a v1 (JAR) signature.
    """)
    @click.option("--cert", metavar="CERT", required=True,
                  type=click.Path(exists=True, dir_okay=False), help="Certificate (PEM or DER).")
    @click.option("--key", metavar="PRIVKEY", required=True,
                  type=click.Path(exists=True, dir_okay=False),
                  help="Private key (unencrypted PKCS #8, PEM or DER).")
    @click.option("--created-by", metavar="TEXT", help="Created-By attribute value.")
    @click.option("-v", "--verbose", is_flag=True, help="Show processed entries.")
    @click.argument("unsigned_apk", type=click.Path(exists=True, dir_okay=False))
    @click.argument("output_apk", type=click.Path(dir_okay=False))
    def sign(*args: Any, **kwargs: Any) -> None:
        do_sign(*args, **kwargs)

    @cli.command(help="""
        Create APK (or JAR) from the files in a directory, signed using a v1
        (JAR) signature.
    """)
    @click.option("--cert", metavar="CERT", required=True,
                  type=click.Path(exists=True, dir_okay=False), help="Certificate (PEM or DER).")
    @click.option("--key", metavar="PRIVKEY", required=True,
                  type=click.Path(exists=True, dir_okay=False),
                  help="Private key (unencrypted PKCS #8, PEM or DER).")
    @click.option("--created-by", metavar="TEXT", help="Created-By attribute value.")
    @click.option("-v", "--verbose", is_flag=True, help="Show processed entries.")
    @click.argument("input_dir", type=click.Path(exists=True, file_okay=False))
    @click.argument("output_apk", type=click.Path(dir_okay=False))
    def build(*args: Any, **kwargs: Any) -> None:
        do_build(*args, **kwargs)

    @cli.command(help="""
        Parse APK v1 (JAR) signature metadata files and output a parse tree
        (indented with spaces) or JSON.
    """)
    @click.option("--json", is_flag=True, help="JSON output.")
    @click.option("-v", "--verbose", is_flag=True, help="Be verbose (no-op w/ --json).")
    @click.option("--wrap", is_flag=True, help="Wrap output (no-op w/ --json).")
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def parse(*args: Any, **kwargs: Any) -> None:
        do_parse(*args, **kwargs)

    @cli.command(help="""
        Verify APK v1 (JAR) signature.

        NB: certificate chains are not validated.
    """)
    @click.option("--quiet", is_flag=True, help="Don't print 'v1 verified' etc. to stdout.")
    @click.option("-v", "--verbose", is_flag=True, help="Show signer(s).")
    @click.argument("apk", type=click.Path(exists=True, dir_okay=False))
    def verify(*args: Any, **kwargs: Any) -> None:
        try:
            do_verify(*args, **kwargs)
        except VerificationError:
            sys.exit(4)

    try:
        cli(prog_name=NAME)
    except (APKV1SignerError, APKSigCopierError, zipfile.BadZipFile) as e:
        _err(f"Error: {e}.")
        sys.exit(3)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
