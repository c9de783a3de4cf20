"""Stage attachment content while messages are tracked; keep it if they are deleted."""

import asyncio
import functools
import logging
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional

from undeleter.errors import AttachmentPromoteError, AttachmentStageError
from undeleter.models.tracked import (
    AttachmentRef,
    ConversationScope,
    PromotedAttachment,
    StagedHandle,
    StageStatus,
    TrackedMessage,
)
from undeleter.monitor import sanitize_filename
from undeleter.storage_config.resolver import OutputPaths

logger = logging.getLogger(__name__)

PathResolver = Callable[[Optional[str]], Optional[Path]]


class AttachmentPreserver:
    """
    Owns the staging area.

    Every tracked attachment gets a staged copy as soon as its message is
    first seen, because the file can disappear before (or without) the
    message row. Each handle is released exactly once: ``discard`` when the
    message slides out of the window, ``promote`` when it is deleted.
    Blocking file I/O runs on a bounded thread pool.
    """

    def __init__(self, paths: OutputPaths, resolve_path: PathResolver, max_workers: int = 4):
        self.paths = paths
        self.resolve_path = resolve_path
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="attachments")

    def prepare(self):
        """Reset the staging area and make sure the output directories exist."""
        staging = self.paths.staging
        if staging.is_dir():
            shutil.rmtree(staging)
        elif staging.exists():
            raise FileExistsError(f"{staging} exists and is not a directory")

        self._ensure_directory(self.paths.attachments)
        self._ensure_directory(staging)
        logger.info(f"Attachments will be saved to: {self.paths.attachments}")

    def shutdown(self):
        self._executor.shutdown(wait=True)

    async def stage_message(self, message: TrackedMessage):
        """Stage every attachment of a newly tracked message."""
        if not message.attachments:
            return

        if message.is_fully_unsent:
            for ref in message.attachments:
                ref.handle = StagedHandle(attachment_id=ref.id, status=StageStatus.SKIPPED,
                                          error="message was already unsent when first seen")
            return

        handles = await asyncio.gather(*(
            self.stage(message.scope, message.id, ref) for ref in message.attachments
        ))
        for ref, handle in zip(message.attachments, handles):
            ref.handle = handle

    async def discard_message(self, message: TrackedMessage):
        """Release every staged copy of an evicted message."""
        await asyncio.gather(*(
            self.discard(ref.handle) for ref in message.attachments if ref.handle is not None
        ))
        if message.attachments:
            logger.debug(f"Cleaned up {len(message.attachments)} temporary attachment(s) of message {message.id}")

    async def promote_message(self, message: TrackedMessage) -> List[PromotedAttachment]:
        """Move every staged copy of a deleted message to permanent storage."""
        return list(await asyncio.gather(*(
            self.promote(message.scope, message.id, ref) for ref in message.attachments
        )))

    async def stage(self, scope: ConversationScope, message_id: int, ref: AttachmentRef) -> StagedHandle:
        """Best-effort copy of one attachment into the staging area."""
        try:
            return await self._run(self._stage_sync, scope, message_id, ref)
        except AttachmentStageError as e:
            logger.warning(f"Could not stage attachment {ref.display_name} of message {message_id}: {e}")
            return StagedHandle(
                attachment_id=ref.id,
                source_path=self.resolve_path(ref.original_path),
                status=StageStatus.FAILED,
                error=str(e),
            )

    async def discard(self, handle: Optional[StagedHandle]):
        """Release a staged copy. A no-op when staging failed or was skipped."""
        if handle is None or not handle.is_live:
            return
        await self._run(self._discard_sync, handle)

    async def promote(self, scope: ConversationScope, message_id: int, ref: AttachmentRef) -> PromotedAttachment:
        """Move staged content to the output directory and report where it went."""
        handle = ref.handle
        if handle is None or not handle.is_live:
            reason = handle.error if handle is not None and handle.error else "content was never staged"
            return self._unrecoverable(ref, reason)

        try:
            path = await self._run(self._promote_sync, scope, message_id, ref, handle)
        except AttachmentPromoteError as e:
            logger.warning(f"Could not save attachment {ref.display_name} of deleted message {message_id}: {e}")
            handle.status = StageStatus.FAILED
            handle.error = str(e)
            return self._unrecoverable(ref, str(e))

        return PromotedAttachment(
            attachment_id=ref.id,
            display_name=ref.display_name,
            content_kind=ref.content_kind,
            original_path=ref.original_path,
            path=path,
        )

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    def _stage_sync(self, scope: ConversationScope, message_id: int, ref: AttachmentRef) -> StagedHandle:
        source = self.resolve_path(ref.original_path)
        if source is None:
            raise AttachmentStageError(ref.id, "no file path recorded in the store")

        staging_dir = self.paths.staging / sanitize_filename(scope.key)
        target = staging_dir / f"{message_id}_{ref.id}{source.suffix}"

        try:
            if not source.exists():
                raise AttachmentStageError(ref.id, f"attachment not found at {source}")
            self._ensure_directory(staging_dir)
            if source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)
        except OSError as e:
            self._remove(target)
            raise AttachmentStageError(ref.id, f"copy from {source} failed: {e}") from e

        logger.debug(f"Staged {source} -> {target}")
        return StagedHandle(
            attachment_id=ref.id,
            source_path=source,
            staged_path=target,
            status=StageStatus.STAGED,
        )

    def _discard_sync(self, handle: StagedHandle):
        try:
            self._remove(handle.staged_path)
        except OSError as e:
            logger.warning(f"Could not remove staged copy {handle.staged_path}: {e}")
            return
        handle.status = StageStatus.DISCARDED

    def _promote_sync(self, scope: ConversationScope, message_id: int, ref: AttachmentRef,
                      handle: StagedHandle) -> Path:
        destination_dir = self.paths.attachments / sanitize_filename(scope.key)
        name = sanitize_filename(f"{message_id}_{ref.display_name}")
        if handle.staged_path.suffix and not Path(name).suffix:
            name += handle.staged_path.suffix

        try:
            self._ensure_directory(destination_dir)
            destination = self._unique_path(destination_dir / name)
            shutil.move(str(handle.staged_path), str(destination))
            self._sync(destination)
        except OSError as e:
            raise AttachmentPromoteError(
                ref.id, f"move from {handle.staged_path} failed (staged copy left in place): {e}"
            ) from e

        handle.status = StageStatus.PROMOTED
        handle.staged_path = None
        logger.info(f"Saved attachment {ref.display_name} to {destination}")
        return destination

    def _unrecoverable(self, ref: AttachmentRef, reason: str) -> PromotedAttachment:
        return PromotedAttachment(
            attachment_id=ref.id,
            display_name=ref.display_name,
            content_kind=ref.content_kind,
            original_path=ref.original_path,
            error=reason,
        )

    def _ensure_directory(self, directory: Path):
        directory.mkdir(parents=True, exist_ok=True)

    def _unique_path(self, path: Path) -> Path:
        """Add a numeric suffix until the path is free."""
        counter = 1
        candidate = path
        while candidate.exists():
            candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
            counter += 1
        return candidate

    def _remove(self, path: Optional[Path]):
        if path is None or not path.exists():
            return
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()

    def _sync(self, path: Path):
        """Flush promoted content to disk before its deletion record is written."""
        if path.is_file():
            with open(path, 'rb') as f:
                os.fsync(f.fileno())
        if hasattr(os, "O_DIRECTORY"):
            fd = os.open(path.parent, os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
