"""
Backup orchestrator - coordinates the complete backup workflow.

Workflow per source:
1. Compress + encrypt the source into volume(s) (two passes)
2. Enforce the retention window of the source type
3. Upload the new volume(s) to every enabled cloud provider

Sources run one after another. A failing source is logged and the run moves
on to the next one; failures are reported together once the batch is done.
"""

import asyncio
import logging
import posixpath
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sealback.config import BackupConfig
from sealback.errors import BackupError
from sealback.models import Source
from sealback.utils.crypto import EncryptionCodec
from sealback.utils.formatting import format_duration, with_fields
from sealback.utils.progress import ProgressReporter
from .compression import CompressionEngine
from .retention import RetentionCleaner
from .storage import CloudUploader, create_storage, upload_options


class BackupRunError(BackupError):
    """Raised at the end of a run in which one or more sources failed."""

    def __init__(self, failures: Dict[str, BaseException]):
        self.failures = failures
        details = '; '.join(f"{name}: {error}" for name, error in failures.items())
        super().__init__(f"{len(failures)} source(s) failed: {details}")


class BackupOrchestrator:
    """
    Runs the backup pipeline for the configured sources.

    `stop()` is cooperative: the source in progress runs to completion and
    no further source is started.
    """

    def __init__(
        self,
        config: BackupConfig,
        logger: Optional[logging.Logger] = None,
        engine: Optional[CompressionEngine] = None,
        cleaner: Optional[RetentionCleaner] = None,
        uploaders: Optional[Dict[str, CloudUploader]] = None,
        progress: Optional[ProgressReporter] = None,
        codec: Optional[EncryptionCodec] = None,
    ):
        """
        Args:
            config: Validated configuration
            logger: Logger every component reports to
            engine: Compression engine (built from config when omitted)
            cleaner: Retention cleaner (built from config when omitted)
            uploaders: Enabled uploaders by provider name (built from
                cloud.enabled when omitted)
            progress: Progress side channel shared by all components
            codec: Encryption codec used by the default engine
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.progress = progress or ProgressReporter(logger=self.logger)
        self.engine = engine or CompressionEngine(
            backup_dir=config.backup_dir,
            codec=codec,
            temp_root=config.temp_dir,
            logger=self.logger,
            progress=self.progress,
        )
        self.cleaner = cleaner or RetentionCleaner(config.backup_dir, logger=self.logger)
        self.uploaders = uploaders if uploaders is not None else self._build_uploaders()
        self.running = False

    def _build_uploaders(self) -> Dict[str, CloudUploader]:
        uploaders = {}
        for name in self.config.cloud.enabled:
            settings = self.config.cloud.providers.get(name, {})
            uploaders[name] = CloudUploader(
                create_storage(name, settings),
                options=upload_options(settings),
                logger=self.logger,
                progress=self.progress,
            )
        return uploaders

    async def start(self) -> None:
        """
        Back up every configured source.

        Raises:
            BackupRunError: If at least one source failed
        """
        await self.run_sources(self.config.sources)

    async def run_sources(self, sources: Iterable[Source]) -> None:
        """
        Back up the given sources in order.

        Raises:
            BackupRunError: If at least one source failed
        """
        if self.running:
            self.logger.warning("Backup is already running, ignoring start request")
            return

        self.running = True
        sources = list(sources)
        failures: Dict[str, BaseException] = {}
        started = time.monotonic()
        self.logger.info(with_fields(
            "Starting backup run",
            sources=len(sources), cloud=', '.join(self.uploaders) or 'disabled',
        ))

        try:
            for source in sources:
                if not self.running:
                    self.logger.info("Backup run stopped, skipping remaining sources")
                    break

                try:
                    await self.backup_source(source)
                except Exception as e:
                    self.logger.error(with_fields(
                        f"Backup of source {source.type} failed: {e}",
                        path=source.path, error=type(e).__name__,
                    ))
                    failures[f"{source.type}:{source.path}"] = e
        finally:
            self.running = False
            self.progress.close()

        self.logger.info(with_fields(
            "Backup run finished",
            succeeded=len(sources) - len(failures), failed=len(failures),
            duration=format_duration(time.monotonic() - started),
        ))

        if failures:
            raise BackupRunError(failures)

    def stop(self) -> None:
        """Prevent further sources from starting."""
        if self.running:
            self.logger.info("Stop requested, finishing current source")
        self.running = False

    async def backup_source(self, source: Source) -> List[Path]:
        """Compress, apply retention and upload one source."""
        volumes = await self.engine.create_backup(source, self.config.first, self.config.second)

        try:
            await asyncio.to_thread(self.cleaner.clean, source.type, source.retention)
        except OSError as e:
            self.logger.error(f"Retention cleanup for {source.type} failed: {e}")

        await self.upload_to_cloud(source, volumes)
        return volumes

    def remote_path(self, source: Source, volume: Path) -> str:
        return posixpath.join(self.config.cloud.remote_dir, source.type, Path(volume).name)

    async def upload_to_cloud(self, source: Source, volumes: List[Path]) -> Dict[str, bool]:
        """
        Upload the volumes to every enabled provider concurrently.

        Returns:
            Provider name -> whether all volumes reached it
        """
        if not self.uploaders:
            self.logger.debug("No cloud providers enabled, skipping upload")
            return {}

        async def upload_all(name: str, uploader: CloudUploader) -> bool:
            results = await asyncio.gather(
                *(uploader.upload(volume, self.remote_path(source, volume)) for volume in volumes),
                return_exceptions=True,
            )
            errors = [result for result in results if isinstance(result, Exception)]
            for error in errors:
                self.logger.error(f"Upload of {source.type} to {name} failed: {error}")
            return not errors

        names = list(self.uploaders)
        results = await asyncio.gather(*(upload_all(name, self.uploaders[name]) for name in names))
        return dict(zip(names, results))
