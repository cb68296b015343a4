import json

import pytest

from attestor.artifact.model import MEDIA_TYPE_LAYER_GZIP, Artifact, Descriptor, Manifest
from attestor.errors import PartialInventory
from attestor.sbom.catalogers import parse_dpkg, parse_npm_package
from attestor.sbom.generator import SBOMGenerator, generate


def _names(doc):
    return {(c.name, c.version) for c in doc.components}


def test_catalogues_layers_and_labels(artifact_factory):
    doc = generate(artifact_factory())
    assert _names(doc) == {("musl", "1.2.4-r2"), ("busybox", "1.36.1-r5"), ("Requests", "2.31.0"), ("app", "1.4.0")}
    assert not doc.partial
    purls = {c.purl for c in doc.components}
    assert "pkg:pypi/requests@2.31.0" in purls
    assert "pkg:apk/alpine/musl@1.2.4-r2" in purls
    assert [c.name for c in doc.components] == sorted(c.name for c in doc.components)


def test_regeneration_is_byte_identical(artifact_factory):
    art = artifact_factory()
    a, b = generate(art).to_bytes(), generate(art).to_bytes()
    assert a == b
    bom = json.loads(a)
    assert bom["bomFormat"] == "CycloneDX"
    assert bom["specVersion"] == "1.5"
    assert bom["metadata"]["timestamp"] == "2024-01-01T00:00:00Z"


def test_added_component_gives_superset(artifact_factory):
    before = generate(artifact_factory())
    pkg = json.dumps({"name": "left-pad", "version": "1.3.0"}).encode()
    after = generate(artifact_factory(extra_files={"app/node_modules/left-pad/package.json": pkg}))
    assert _names(before) < _names(after)
    assert _names(after) - _names(before) == {("left-pad", "1.3.0")}


def test_whiteout_removes_lower_layer_package(layer_factory):
    base = layer_factory({"lib/apk/db/installed": b"P:musl\nV:1.2.4-r2\n"})
    upper = layer_factory({"lib/apk/db/.wh.installed": b""})
    doc = generate(Artifact.from_layers([base, upper]))
    assert doc.components == []


def test_later_layer_replaces_file(layer_factory):
    base = layer_factory({"lib/apk/db/installed": b"P:musl\nV:1.2.3-r0\n"})
    upper = layer_factory({"lib/apk/db/installed": b"P:musl\nV:1.2.4-r2\n"})
    doc = generate(Artifact.from_layers([base, upper]))
    assert _names(doc) == {("musl", "1.2.4-r2")}


def test_gzip_layers(layer_factory):
    layer = layer_factory({"var/lib/dpkg/status": b"Package: bash\nStatus: install ok installed\nVersion: 5.2-1\n"},
                          compress=True)
    doc = generate(Artifact.from_layers([layer], layer_media_type=MEDIA_TYPE_LAYER_GZIP))
    assert _names(doc) == {("bash", "5.2-1")}


def test_unsupported_layer_is_a_gap_not_a_failure(artifact_factory):
    art = artifact_factory()
    m = art.manifest
    odd = Descriptor.for_blob("application/vnd.example.wasm", b"\x00asm")
    manifest = Manifest(schema_version=2, config=m.config, layers=[*m.layers, odd])
    blobs = {**art.blobs, odd.digest: b"\x00asm"}
    doc = generate(Artifact(manifest_bytes=manifest.to_bytes(), blobs=blobs))
    assert doc.partial
    assert [g.layer_digest for g in doc.gaps] == [odd.digest]
    assert ("musl", "1.2.4-r2") in _names(doc)
    props = json.loads(doc.to_bytes())["properties"]
    assert {"name": "attestor:partial_inventory", "value": "true"} in props
    with pytest.raises(PartialInventory):
        doc.raise_for_partial()


def test_corrupt_and_missing_layers(artifact_factory):
    art = artifact_factory()
    m = art.manifest
    junk = Descriptor.for_blob(m.layers[0].media_type, b"definitely not a tarball" * 40)
    manifest = Manifest(schema_version=2, config=m.config, layers=[*m.layers, junk])
    blobs = {k: v for k, v in art.blobs.items() if k != m.layers[0].digest}
    blobs[junk.digest] = b"definitely not a tarball" * 40
    doc = generate(Artifact(manifest_bytes=manifest.to_bytes(), blobs=blobs))
    reasons = {g.layer_digest: g.reason for g in doc.gaps}
    assert reasons[m.layers[0].digest] == "layer blob not available"
    assert reasons[junk.digest].startswith("unreadable layer")


def test_strict_generator_raises(artifact_factory):
    art = artifact_factory()
    blobs = {k: v for k, v in art.blobs.items() if k != art.manifest.layers[0].digest}
    with pytest.raises(PartialInventory) as exc:
        SBOMGenerator(strict=True).generate(Artifact(manifest_bytes=art.manifest_bytes, blobs=blobs))
    assert len(exc.value.gaps) == 1


def test_dpkg_skips_removed_packages():
    status = (b"Package: vim\nStatus: deinstall ok config-files\nVersion: 9.0\n\n"
              b"Package: curl\nStatus: install ok installed\nVersion: 8.5.0-2\nDescription: tool\n more text\n")
    assert [(c.name, c.version) for c in parse_dpkg(status, "l")] == [("curl", "8.5.0-2")]


def test_npm_scoped_package():
    comps = parse_npm_package(b'{"name": "@types/node", "version": "20.1.0"}', "l")
    assert comps[0].purl == "pkg:npm/%40types/node@20.1.0"
    assert parse_npm_package(b"[1, 2]", "l") == []
