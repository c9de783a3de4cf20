"""Tests for attachment staging, discard and promotion."""

from pathlib import Path

import pytest

from undeleter.models.tracked import AttachmentRef, StageStatus, TrackedMessage


def test_prepare_wipes_staging_area(output_paths, fake_reader):
    """Leftover staged copies from a previous run are removed."""
    from undeleter.monitor.attachment_preserver import AttachmentPreserver

    output_paths.staging.mkdir(parents=True)
    leftover = output_paths.staging / "old.jpg"
    leftover.write_bytes(b"stale")

    preserver = AttachmentPreserver(output_paths, fake_reader.resolve_attachment_path)
    preserver.prepare()
    preserver.shutdown()

    assert not leftover.exists()
    assert output_paths.staging.is_dir()
    assert output_paths.attachments.is_dir()


@pytest.mark.asyncio
async def test_stage_copies_into_staging_area(preserver, output_paths, make_message, scope):
    message = TrackedMessage.from_source(make_message(1, attachments=["photo.jpg"]), scope, 1)

    await preserver.stage_message(message)

    handle = message.attachments[0].handle
    assert handle.status == StageStatus.STAGED
    assert handle.staged_path.exists()
    assert output_paths.staging in handle.staged_path.parents
    assert handle.staged_path.read_bytes() == b"content of photo.jpg"


@pytest.mark.asyncio
async def test_stage_missing_source_yields_failed_handle(preserver, scope):
    """A missing file is recorded on the ref, not raised."""
    ref = AttachmentRef(id=5, original_path="/nonexistent/file.jpg", content_kind="image/jpeg",
                        display_name="file.jpg")

    handle = await preserver.stage(scope, 1, ref)

    assert handle.status == StageStatus.FAILED
    assert "not found" in handle.error
    assert handle.staged_path is None


@pytest.mark.asyncio
async def test_stage_without_path_yields_failed_handle(preserver, scope):
    ref = AttachmentRef(id=5, original_path=None, content_kind="unknown", display_name="attachment_5")

    handle = await preserver.stage(scope, 1, ref)

    assert handle.status == StageStatus.FAILED


@pytest.mark.asyncio
async def test_already_unsent_message_is_not_staged(preserver, make_message, scope):
    message = TrackedMessage.from_source(make_message(1, attachments=["a.jpg"], unsent=True), scope, 1)

    await preserver.stage_message(message)

    assert message.attachments[0].handle.status == StageStatus.SKIPPED


@pytest.mark.asyncio
async def test_discard_removes_staged_copy(preserver, make_message, scope):
    message = TrackedMessage.from_source(make_message(1, attachments=["a.jpg"]), scope, 1)
    await preserver.stage_message(message)
    staged = message.attachments[0].handle.staged_path

    await preserver.discard_message(message)

    assert not staged.exists()
    assert message.attachments[0].handle.status == StageStatus.DISCARDED


@pytest.mark.asyncio
async def test_discard_after_failed_stage_is_noop(preserver, scope):
    ref = AttachmentRef(id=5, original_path="/nonexistent/file.jpg", content_kind="image/jpeg",
                        display_name="file.jpg")
    ref.handle = await preserver.stage(scope, 1, ref)

    await preserver.discard(ref.handle)
    await preserver.discard(None)

    assert ref.handle.status == StageStatus.FAILED


@pytest.mark.asyncio
async def test_promote_moves_content_to_output(preserver, output_paths, make_message, scope, source_dir):
    """Promotion survives the original file disappearing after staging."""
    message = TrackedMessage.from_source(make_message(1, attachments=["photo.jpg"]), scope, 1)
    await preserver.stage_message(message)
    (source_dir / "1_photo.jpg").unlink()

    promoted = await preserver.promote_message(message)

    assert len(promoted) == 1
    assert promoted[0].recovered
    assert promoted[0].path.read_bytes() == b"content of photo.jpg"
    assert output_paths.attachments in promoted[0].path.parents
    assert output_paths.staging not in promoted[0].path.parents
    assert message.attachments[0].handle.status == StageStatus.PROMOTED


@pytest.mark.asyncio
async def test_promote_after_failed_stage_is_unrecoverable(preserver, scope):
    ref = AttachmentRef(id=5, original_path="/nonexistent/file.jpg", content_kind="image/jpeg",
                        display_name="file.jpg")
    ref.handle = await preserver.stage(scope, 1, ref)

    promoted = await preserver.promote(scope, 1, ref)

    assert not promoted.recovered
    assert "not found" in promoted.error


@pytest.mark.asyncio
async def test_promote_keeps_duplicate_names_apart(preserver, output_paths, make_message, scope):
    """Two deletions of same-named files do not overwrite each other."""
    first = TrackedMessage.from_source(make_message(1, attachments=["photo.jpg"]), scope, 1)
    await preserver.stage_message(first)
    destination = output_paths.attachments / "all" / "1_photo.jpg"
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(b"already here")

    promoted = await preserver.promote_message(first)

    assert promoted[0].path == Path(output_paths.attachments / "all" / "1_photo_1.jpg")
    assert destination.read_bytes() == b"already here"
