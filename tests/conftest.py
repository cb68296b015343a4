import base64
import gzip
import io
import json
import tarfile
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.x509.oid import NameOID

from attestor import config
from attestor.artifact.model import MEDIA_TYPE_LAYER_TAR, Artifact
from attestor.crypto.jcs import jcs_canonicalize
from attestor.identity.certificate import OID_ISSUER_V1, OID_ISSUER_V2
from attestor.provenance.model import BuildContext
from attestor.transparency.merkle import consistency_path, inclusion_path, leaf_hash, merkle_root
from attestor.transparency.model import log_key_id
from attestor.verify.trust import TrustedRoot

GITHUB_ISSUER = "https://token.actions.githubusercontent.com"
IDENTITY_X = "builder-x@example.com"
IDENTITY_Y = "builder-y@example.com"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(config, "RETRY_BASE", 0.0)
    monkeypatch.setattr(config, "RETRY_MAX_DELAY", 0.0)
    monkeypatch.setattr(config, "ALLOWED_ISSUERS", [GITHUB_ISSUER, "https://accounts.google.com"])


def _der_utf8(value: str) -> bytes:
    raw = value.encode()
    assert len(raw) < 128
    return bytes([0x0C, len(raw)]) + raw


def _name(cn):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


class TestPKI:
    """Root -> intermediate -> short-lived leaf, like a Fulcio deployment."""

    __test__ = False

    def __init__(self):
        now = datetime.now(timezone.utc)
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.root = (
            x509.CertificateBuilder()
            .subject_name(_name("attestor test root"))
            .issuer_name(_name("attestor test root"))
            .public_key(self.root_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=365))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.root_key, hashes.SHA256())
        )
        self.inter_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate = (
            x509.CertificateBuilder()
            .subject_name(_name("attestor test intermediate"))
            .issuer_name(self.root.subject)
            .public_key(self.inter_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=365))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self.root_key, hashes.SHA256())
        )

    def issue(self, public_key, identity, issuer=GITHUB_ISSUER, not_before=None, validity=timedelta(minutes=10),
              uri=False, legacy_issuer=False, signer=None):
        not_before = not_before or datetime.now(timezone.utc) - timedelta(seconds=5)
        san = x509.UniformResourceIdentifier(identity) if uri else x509.RFC822Name(identity)
        if legacy_issuer:
            issuer_ext = x509.UnrecognizedExtension(OID_ISSUER_V1, issuer.encode())
        else:
            issuer_ext = x509.UnrecognizedExtension(OID_ISSUER_V2, _der_utf8(issuer))
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([]))
            .issuer_name(self.intermediate.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_before + validity)
            .add_extension(x509.SubjectAlternativeName([san]), critical=True)
            .add_extension(issuer_ext, critical=False)
            .sign(signer or self.inter_key, hashes.SHA256())
        )
        return [_pem(cert), _pem(self.intermediate)]


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def make_token(claims=None, **overrides):
    body = {
        "iss": GITHUB_ISSUER,
        "sub": "repo:example/app:ref:refs/heads/main",
        "email": IDENTITY_X,
        "exp": int(time.time()) + 600,
        "iat": int(time.time()),
    }
    body.update(claims or {})
    body.update(overrides)

    def enc(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()

    return ".".join([enc({"alg": "RS256", "typ": "JWT"}), enc(body), "c2lnbmF0dXJl"])


class FakeCA:
    """Fulcio-shaped signingCert endpoint backed by TestPKI."""

    def __init__(self, pki):
        self.pki = pki
        self.requests = 0
        self.fail_with = []  # status codes returned before succeeding
        self.validity = timedelta(minutes=10)
        self.identity_override = None
        self.swap_key = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.fail_with:
            return httpx.Response(self.fail_with.pop(0), json={"error": "injected"})
        body = json.loads(request.content)
        token = body["credentials"]["oidcIdentityToken"]
        claims = json.loads(base64.urlsafe_b64decode(token.split(".")[1] + "=="))
        key = serialization.load_pem_public_key(body["publicKeyRequest"]["publicKey"]["content"].encode())
        if self.swap_key:
            key = ec.generate_private_key(ec.SECP256R1()).public_key()
        identity = self.identity_override or claims.get("email") or claims["sub"]
        chain = self.pki.issue(key, identity, issuer=claims["iss"], validity=self.validity)
        return httpx.Response(201, json={"signedCertificateEmbeddedSct": {"chain": {"certificates": chain}}})

    def transport(self):
        return httpx.MockTransport(self.handler)


class FakeLog:
    """Append-only log computing real RFC 6962 proofs and Ed25519 checkpoints."""

    def __init__(self, key=None, origin="attestor.test/log"):
        self.key = key or Ed25519PrivateKey.generate()
        self.origin = origin
        self.leaves = []
        self.times = []
        self.fail_with = []
        self.clock = lambda: int(time.time())

    @property
    def public_key(self):
        return self.key.public_key()

    def public_pem(self):
        return self.public_key.public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode()

    def checkpoint(self, size=None):
        size = len(self.leaves) if size is None else size
        body = {
            "origin": self.origin,
            "tree_size": size,
            "root_hash": merkle_root(self.leaves[:size]).hex(),
            "timestamp": self.clock(),
        }
        sig = self.key.sign(jcs_canonicalize(body))
        return {**body, "key_id": log_key_id(self.public_key), "signature": base64.b64encode(sig).decode()}

    def proof(self, index):
        cp = self.checkpoint()
        return {
            "inclusion_proof": {
                "log_index": index,
                "tree_size": cp["tree_size"],
                "root_hash": cp["root_hash"],
                "hashes": [h.hex() for h in inclusion_path(self.leaves, index)],
            },
            "checkpoint": cp,
        }

    def entry(self, index):
        return {
            "entry_index": index,
            "leaf_hash": self.leaves[index].hex(),
            "integrated_time": self.times[index],
            **self.proof(index),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with:
            return httpx.Response(self.fail_with.pop(0))
        path = request.url.path
        if request.method == "POST" and path == "/api/v1/log/entries":
            data = base64.b64decode(json.loads(request.content)["body"])
            h = leaf_hash(data)
            if h in self.leaves:
                return httpx.Response(409, json=self.entry(self.leaves.index(h)))
            self.leaves.append(h)
            self.times.append(self.clock())
            return httpx.Response(201, json=self.entry(len(self.leaves) - 1))
        if request.method == "GET" and path == "/api/v1/log/entries":
            h = bytes.fromhex(request.url.params["leaf_hash"])
            if h not in self.leaves:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=self.entry(self.leaves.index(h)))
        if request.method == "GET" and path.startswith("/api/v1/log/entries/") and path.endswith("/proof"):
            index = int(path.split("/")[-2])
            if index >= len(self.leaves):
                return httpx.Response(404)
            return httpx.Response(200, json=self.proof(index))
        if request.method == "GET" and path == "/api/v1/log/checkpoint":
            return httpx.Response(200, json=self.checkpoint())
        if request.method == "GET" and path == "/api/v1/log/proof":
            first, last = int(request.url.params["first"]), int(request.url.params["last"])
            hashes = consistency_path(self.leaves[:last], first)
            return httpx.Response(200, json={"old_size": first, "new_size": last, "hashes": [h.hex() for h in hashes]})
        return httpx.Response(404)

    def transport(self):
        return httpx.MockTransport(self.handler)


class FakeOCIRegistry:
    """Just enough of the OCI distribution API for one repository."""

    def __init__(self):
        self.blobs = {}
        self.manifests = {}
        self.fail_with = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with:
            return httpx.Response(self.fail_with.pop(0))
        parts = request.url.path.split("/")
        kind, ref = parts[-2], parts[-1]
        if request.url.path.endswith("/blobs/uploads/"):
            digest = request.url.params["digest"]
            self.blobs[digest] = request.content
            return httpx.Response(201, headers={"Location": f"/v2/app/blobs/{digest}"})
        if kind == "blobs":
            if ref not in self.blobs:
                return httpx.Response(404)
            return httpx.Response(200, content=b"" if request.method == "HEAD" else self.blobs[ref])
        if kind == "manifests":
            if request.method == "PUT":
                self.manifests[ref] = request.content
                return httpx.Response(201)
            if ref not in self.manifests:
                return httpx.Response(404)
            return httpx.Response(200, content=self.manifests[ref])
        return httpx.Response(404)

    def transport(self):
        return httpx.MockTransport(self.handler)


def make_layer(files, compress=False):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for path, data in files.items():
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    raw = buf.getvalue()
    return gzip.compress(raw, mtime=0) if compress else raw


APK_DB = b"P:musl\nV:1.2.4-r2\nA:x86_64\n\nP:busybox\nV:1.36.1-r5\n\n"
DIST_INFO = b"Metadata-Version: 2.1\nName: Requests\nVersion: 2.31.0\n\n"


def sample_artifact(extra_files=None, created="2024-01-01T00:00:00Z"):
    base = make_layer({"lib/apk/db/installed": APK_DB})
    app_files = {"usr/lib/python3.11/site-packages/requests-2.31.0.dist-info/METADATA": DIST_INFO}
    app_files.update(extra_files or {})
    return Artifact.from_layers(
        [base, make_layer(app_files)],
        config={"created": created, "config": {"Labels": {"attestor.component.app": "1.4.0"}}},
        layer_media_type=MEDIA_TYPE_LAYER_TAR,
    )


def sample_context(**overrides):
    data = {
        "builder_id": "https://github.com/example/app/.github/workflows/build.yml@refs/heads/main",
        "started_on": datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc) - timedelta(minutes=5),
        "finished_on": datetime(2024, 1, 1, 0, 1, 0, tzinfo=timezone.utc),
        "materials": ["sha256:" + "ab" * 32],
        "parameters": {"ref": "refs/heads/main"},
    }
    data.update(overrides)
    return BuildContext(**data)


@pytest.fixture
def pki():
    return TestPKI()


@pytest.fixture
def fake_ca(pki):
    return FakeCA(pki)


@pytest.fixture
def fake_log():
    return FakeLog()


@pytest.fixture
def fake_oci():
    return FakeOCIRegistry()


@pytest.fixture
def trusted_root(pki, fake_log):
    return TrustedRoot.from_pems([_pem(pki.root)], [fake_log.public_pem()])


@pytest.fixture
def token_factory():
    return make_token


@pytest.fixture
def artifact_factory():
    return sample_artifact


@pytest.fixture
def layer_factory():
    return make_layer


@pytest.fixture
def context_factory():
    return sample_context
