from __future__ import annotations

import allure
import pytest

from pullexec.errors import AcknowledgeError, ConfigurationError
from pullexec.sources.fs import FsWorkSource
from pullexec.sources.local import LocalWorkSource

pytestmark = [
    allure.epic("Work Sources"),
    allure.feature("Filesystem and Local"),
]


def _source(env: dict[str, str]) -> FsWorkSource:
    source = FsWorkSource()
    source.configure(env, {})
    source.connect()
    return source


def test_prefix_match_picks_first_file_in_sorted_order(tmp_path) -> None:
    (tmp_path / "job-b.json").write_text("b")
    (tmp_path / "job-a.json").write_text("a")
    (tmp_path / "other.txt").write_text("x")

    item = _source({"PULLEXEC_FS_FOLDER": str(tmp_path), "PULLEXEC_FS_KEY_PREFIX": "job-"}).fetch()

    assert item is not None
    assert item.key == "job-a.json"
    assert item.payload == b"a"


def test_regex_match_walks_subfolders(tmp_path) -> None:
    (tmp_path / "in").mkdir()
    (tmp_path / "in" / "task-1.yaml").write_text("task")

    item = _source({"PULLEXEC_FS_FOLDER": str(tmp_path), "PULLEXEC_FS_KEY_REGEX": r"task-\d+\.yaml$"}).fetch()

    assert item is not None
    assert item.key == "in/task-1.yaml"


def test_no_matching_file_is_no_work(tmp_path) -> None:
    assert _source({"PULLEXEC_FS_FOLDER": str(tmp_path), "PULLEXEC_FS_KEY_PREFIX": "none"}).fetch() is None


def test_clear_rm_removes_file(tmp_path) -> None:
    (tmp_path / "work.txt").write_text("w")
    source = _source(
        {"PULLEXEC_FS_FOLDER": str(tmp_path), "PULLEXEC_FS_KEY": "work.txt", "PULLEXEC_FS_CLEAR_OP": "rm"},
    )

    item = source.fetch()
    source.acknowledge(item)

    assert not (tmp_path / "work.txt").exists()


def test_fail_mv_uses_key_template(tmp_path) -> None:
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    (inbox / "job.txt").write_text("w")
    failed = tmp_path / "failed"
    source = _source(
        {
            "PULLEXEC_FS_FOLDER": str(inbox),
            "PULLEXEC_FS_KEY": "job.txt",
            "PULLEXEC_FS_FAIL_OP": "mv",
            "PULLEXEC_FS_FAIL_FOLDER": str(failed),
            "PULLEXEC_FS_FAIL_KEY_TEMPLATE": "retry/{{key}}",
        },
    )

    source.report_failure(source.fetch())

    assert (failed / "retry" / "job.txt").read_text() == "w"
    assert not (inbox / "job.txt").exists()


def test_acknowledge_wraps_filesystem_errors(tmp_path) -> None:
    (tmp_path / "job.txt").write_text("w")
    source = _source({"PULLEXEC_FS_FOLDER": str(tmp_path), "PULLEXEC_FS_KEY": "job.txt", "PULLEXEC_FS_CLEAR_OP": "rm"})
    item = source.fetch()
    (tmp_path / "job.txt").unlink()

    with pytest.raises(AcknowledgeError):
        source.acknowledge(item)


@pytest.mark.parametrize(
    ("env", "message"),
    [
        ({}, "PULLEXEC_FS_KEY"),
        ({"PULLEXEC_FS_KEY_REGEX": "("}, "PULLEXEC_FS_KEY_REGEX"),
        ({"PULLEXEC_FS_KEY": "a", "PULLEXEC_FS_CLEAR_OP": "mv"}, "PULLEXEC_FS_CLEAR_FOLDER"),
        ({"PULLEXEC_FS_KEY": "a", "PULLEXEC_FS_CLEAR_OP": "copy"}, "PULLEXEC_FS_CLEAR_OP"),
    ],
)
def test_invalid_settings_raise_configuration_error(tmp_path, env, message) -> None:
    with pytest.raises(ConfigurationError, match=message):
        FsWorkSource().configure({"PULLEXEC_FS_FOLDER": str(tmp_path), **env}, {})


def test_local_source_serves_payload_from_environment_or_flag() -> None:
    source = LocalWorkSource()
    source.configure({"PULLEXEC_PAYLOAD": "from env"}, {"payload": "from flag"})
    assert source.fetch().payload == b"from env"

    source = LocalWorkSource()
    source.configure({}, {"payload": "from flag"})
    assert source.fetch().payload == b"from flag"

    source = LocalWorkSource()
    source.configure({}, {})
    assert source.fetch() is None
