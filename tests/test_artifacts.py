import pytest

from flowci.artifacts import ArtifactStore, resolve_paths
from flowci.errors import ArtifactError


@pytest.fixture
def workspace(tmp_path):
    for rel in ("coverage.xml", "reports/unit.xml", "reports/nested/int.xml", "reports/skip.log", "bandit.json"):
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel, encoding="utf-8")
    return tmp_path


def test_file_dir_and_glob_patterns(workspace):
    assert resolve_paths(workspace, ["coverage.xml"]) == ["coverage.xml"]
    assert resolve_paths(workspace, ["reports/"]) == ["reports/nested/int.xml", "reports/skip.log", "reports/unit.xml"]
    assert resolve_paths(workspace, ["**/*.xml"]) == ["coverage.xml", "reports/nested/int.xml", "reports/unit.xml"]


def test_duplicates_and_exclusions(workspace):
    paths = resolve_paths(workspace, ["coverage.xml", "*.xml", "reports", "!*.log", ""])
    assert paths == ["coverage.xml", "reports/nested/int.xml", "reports/unit.xml"]


def test_no_match(workspace):
    assert resolve_paths(workspace, ["missing/*.xml", "nope.txt"]) == []


def test_store_upload_and_lookup():
    store = ArtifactStore()
    artifact = store.upload("sbom-report", ["bom.xml"], "dependency-check")

    assert store.get("sbom-report") is artifact
    assert artifact.paths == ("bom.xml",)
    assert store.find("missing") is None
    assert store.names() == ["sbom-report"]
    assert store.all() == [artifact]


def test_store_rejects_reupload_and_unknown_names():
    store = ArtifactStore()
    store.upload("dist", ["a"], "build")
    with pytest.raises(ArtifactError, match="already uploaded by job 'build'"):
        store.upload("dist", ["b"], "other")
    with pytest.raises(ArtifactError, match="not found"):
        store.get("ghost")
