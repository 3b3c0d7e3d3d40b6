import hashlib
import json

import pytest

from ptopticalarchive.errors import CollisionError, RecordError
from ptopticalarchive.metadata import MetadataProvider
from ptopticalarchive.provenance import ProvenanceRecord, ProvenanceRecorder

from .conftest import (
    MEDIUM_CKSUM, MEDIUM_SHA256, ChangingMedium, FakeExecutor, FakeRunner, medium_bytes,
    snapshot,
)


def entry_dir(archiver):
    return archiver.store.root / MEDIUM_CKSUM


def test_end_to_end_archival(make_archiver, disc_tree, tmp_path):
    executor = FakeExecutor(mount_source=disc_tree)
    archiver = make_archiver(executor)

    archiver.run()

    assert archiver.exit_code == 0
    assert archiver.context.state == "Done"
    entry = entry_dir(archiver)
    assert sorted(p.name for p in archiver.store.root.iterdir()) == [MEDIUM_CKSUM]
    assert sorted(p.name for p in entry.iterdir()) == [
        f"{MEDIUM_CKSUM}.iso", f"{MEDIUM_CKSUM}.xml", "content"]
    assert (entry / f"{MEDIUM_CKSUM}.iso").read_bytes() == medium_bytes()
    assert (entry / "content" / "DATA" / "IMG_0001.JPG").exists()

    report = archiver.context.report
    assert report.image_digest == report.medium_digest == MEDIUM_SHA256

    record = ProvenanceRecord.from_xml(entry / f"{MEDIUM_CKSUM}.xml")
    assert record.content_address == MEDIUM_SHA256
    assert record.dedup_checksum == MEDIUM_CKSUM
    assert record.used_size_mb == 1
    assert record.volume_label == "Unknown"
    assert record.verification_status == "VERIFIED"
    assert record.supplied.description == "Family photos 2009"
    assert record.warnings == []

    assert list((tmp_path / "scratch").iterdir()) == []
    staging = archiver.context.entry.staging_path
    assert ("chown", staging, "archivist") in executor.called("chown")


def test_non_mountable_medium_still_archived(make_archiver):
    archiver = make_archiver(FakeExecutor(mount_source=None))

    archiver.run()

    assert archiver.exit_code == 0
    entry = entry_dir(archiver)
    assert (entry / f"{MEDIUM_CKSUM}.iso").exists()
    assert list((entry / "content").iterdir()) == []
    record = ProvenanceRecord.from_xml(entry / f"{MEDIUM_CKSUM}.xml")
    assert any("Could not mount image" in w for w in record.warnings)
    assert archiver.context.warnings == record.warnings


def test_second_archival_of_same_medium_aborts(make_archiver, disc_tree):
    first = make_archiver(FakeExecutor(mount_source=disc_tree))
    first.run()
    before = snapshot(first.store.root)

    second = make_archiver(FakeExecutor(mount_source=disc_tree))
    second.run()

    assert second.exit_code == 1
    assert second.context.state == "CollisionFailed"
    assert "already exists" in second.context.error
    assert snapshot(second.store.root) == before


@pytest.mark.parametrize("size", [0, -4096, 2047])
def test_unusable_device_size_stops_before_anything_is_written(make_archiver, tmp_path, size):
    archiver = make_archiver(FakeExecutor(device_size=size))

    archiver.run()

    assert archiver.exit_code == 1
    assert archiver.context.state == "Unmounted"
    assert not (tmp_path / "archive").exists()
    assert list((tmp_path / "scratch").iterdir()) == []


def test_mismatch_is_a_warning(make_archiver, medium, disc_tree):
    changed = b"\x5a" * len(medium_bytes())
    archiver = make_archiver(FakeExecutor(mount_source=disc_tree),
                             opener=ChangingMedium(medium, changed))

    archiver.run()

    assert archiver.exit_code == 0
    assert not archiver.context.report.match
    assert any("mismatch" in w for w in archiver.context.warnings)
    entry = entry_dir(archiver)
    assert (entry / f"{MEDIUM_CKSUM}.iso").read_bytes() == medium_bytes()
    record = ProvenanceRecord.from_xml(entry / f"{MEDIUM_CKSUM}.xml")
    assert record.verification_status == "MISMATCH"
    assert record.image_digest == MEDIUM_SHA256
    assert record.content_address == hashlib.sha256(changed).hexdigest()


def test_auto_mounted_medium_is_released_first(make_archiver, medium):
    runner = FakeRunner({("lsblk", "-pno", "MOUNTPOINT", str(medium)): "/media/user/DISC"})
    executor = FakeExecutor(mount_source=None, fail_unmount=True)

    archiver = make_archiver(executor, runner=runner)
    archiver.run()

    assert archiver.exit_code == 0
    unmounts = [call for call in executor.called("unmount") if str(call[1]) == "/media/user/DISC"]
    assert [call[2] for call in unmounts] == [False, True]


def test_medium_that_cannot_be_released_aborts(make_archiver, medium, tmp_path):
    runner = FakeRunner({("lsblk", "-pno", "MOUNTPOINT", str(medium)): "/media/user/DISC"})
    executor = FakeExecutor(fail_unmount=True, fail_lazy_unmount=True)

    archiver = make_archiver(executor, runner=runner)
    archiver.run()

    assert archiver.exit_code == 1
    assert archiver.context.state == "Located"
    assert not (tmp_path / "archive").exists()


def test_no_drive(make_archiver, tmp_path):
    archiver = make_archiver(FakeExecutor(), device="")

    archiver.run()

    assert archiver.exit_code == 1
    assert "No optical drive found" in archiver.context.error
    assert not (tmp_path / "archive").exists()


def test_missing_dependencies(make_archiver):
    archiver = make_archiver(FakeExecutor(missing=["blockdev"]))

    archiver.run()

    assert archiver.exit_code == 1
    assert archiver.context.state == "Idle"
    assert "blockdev" in archiver.context.error


def test_interrupt_leaves_no_entry(make_archiver, tmp_path):
    class InterruptingExecutor(FakeExecutor):
        def mount(self, source, target, options=("loop", "ro")):
            raise KeyboardInterrupt

    archiver = make_archiver(InterruptingExecutor())

    with pytest.raises(KeyboardInterrupt):
        archiver.run()

    assert list((tmp_path / "archive").iterdir()) == []
    assert list((tmp_path / "scratch").iterdir()) == []


def test_collision_during_publication_discards_staging(make_archiver, tmp_path):
    class RacingExecutor(FakeExecutor):
        def chown(self, path, owner):
            # another run publishes the same address meanwhile
            (tmp_path / "archive" / MEDIUM_CKSUM).mkdir(exist_ok=True)

    archiver = make_archiver(RacingExecutor())
    archiver.run()

    assert archiver.exit_code == 1
    assert isinstance(archiver.context.error, str)
    assert [p.name for p in (tmp_path / "archive").iterdir()] == [MEDIUM_CKSUM]
    assert list((tmp_path / "archive" / MEDIUM_CKSUM).iterdir()) == []


def test_log_file_and_report(make_archiver, tmp_path):
    archiver = make_archiver(FakeExecutor())
    archiver.run()

    outfile = archiver.save_report()

    logs = tmp_path / "logs"
    assert any(p.name.startswith("optical_archive_") for p in logs.iterdir())
    assert outfile.startswith(str(logs / f"archival_{MEDIUM_CKSUM}_"))
    with open(outfile, encoding="utf-8") as fh:
        assert json.load(fh)


def test_collision_error_type(make_archiver, disc_tree, monkeypatch):
    make_archiver(FakeExecutor(mount_source=disc_tree)).run()
    archiver = make_archiver(FakeExecutor(mount_source=disc_tree))
    failures = []
    monkeypatch.setattr(archiver, "_fail", failures.append)

    archiver.run()

    assert len(failures) == 1
    assert isinstance(failures[0], CollisionError)


def test_collision_reports_when_the_medium_was_archived(make_archiver, disc_tree):
    first = make_archiver(FakeExecutor(mount_source=disc_tree))
    first.run()

    second = make_archiver(FakeExecutor(mount_source=disc_tree))
    second.run()

    assert second.context.existing.archived_at == first.context.record.archived_at
    assert second.context.existing.content_address == MEDIUM_SHA256


class ClosedTerminal(MetadataProvider):
    def supply(self, defaults):
        raise EOFError("stdin closed")


def test_metadata_failure_still_publishes_entry(make_archiver):
    archiver = make_archiver(FakeExecutor(), provider=ClosedTerminal())

    archiver.run()

    assert archiver.exit_code == 0
    entry = entry_dir(archiver)
    assert (entry / f"{MEDIUM_CKSUM}.iso").read_bytes() == medium_bytes()
    record = ProvenanceRecord.from_xml(entry / f"{MEDIUM_CKSUM}.xml")
    assert record.supplied.display_name == "Unknown"
    assert record.supplied.entered_by == ""
    assert any("Descriptive metadata not collected" in w for w in record.warnings)


def test_record_write_failure_keeps_stored_image(make_archiver, monkeypatch):
    def broken_write(record, record_path):
        raise RecordError(f"Could not write record {record_path}: No space left on device")

    monkeypatch.setattr(ProvenanceRecorder, "write", staticmethod(broken_write))
    archiver = make_archiver(FakeExecutor())

    archiver.run()

    assert archiver.exit_code == 1
    assert archiver.context.state == "Verified"
    assert not entry_dir(archiver).exists()
    staged = archiver.store.find_staging(MEDIUM_CKSUM)
    assert staged == [archiver.context.entry.staging_path]
    assert (staged[0] / f"{MEDIUM_CKSUM}.iso").read_bytes() == medium_bytes()


def test_publication_failure_keeps_stored_image(make_archiver, monkeypatch):
    def broken_rename(src, dst):
        raise OSError(18, "Invalid cross-device link")

    monkeypatch.setattr("ptopticalarchive.store.os.rename", broken_rename)
    archiver = make_archiver(FakeExecutor())

    archiver.run()

    assert archiver.exit_code == 1
    assert archiver.context.state == "Recorded"
    staged = archiver.store.find_staging(MEDIUM_CKSUM)
    assert len(staged) == 1
    assert sorted(p.name for p in staged[0].iterdir()) == [
        f"{MEDIUM_CKSUM}.iso", f"{MEDIUM_CKSUM}.xml", "content"]
