"""Shell-script DNS provider.

Wraps two operator-supplied scripts:

- ``create_script``: called as ``script <domain> <record_name> <value>``
- ``delete_script``: called as ``script <domain> <record_name> <value>``

Both must exit 0 on success and must themselves be idempotent (the
reconciler may re-run them after a crash).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from acmerecon.core.errors import ProviderError

log = logging.getLogger(__name__)


class CallbackDnsProvider:
    """DNS provider that shells out to create/delete scripts.

    Parameters
    ----------
    config:
        ``create_script``, ``delete_script`` and optional
        ``script_timeout`` (seconds, default 60).

    """

    def __init__(self, config: dict) -> None:
        create_script = config.get("create_script")
        delete_script = config.get("delete_script")
        if not create_script:
            msg = "callback DNS provider requires 'create_script' in config"
            raise ProviderError(msg, retryable=False)
        if not delete_script:
            msg = "callback DNS provider requires 'delete_script' in config"
            raise ProviderError(msg, retryable=False)
        self._create_script = create_script
        self._delete_script = delete_script
        self._timeout = config.get("script_timeout", 60)

    async def create_txt_record(self, domain: str, record_name: str, value: str) -> str | None:
        log.info("DNS create: %s %s via %s", record_name, domain, self._create_script)
        await self._run(self._create_script, domain, record_name, value)
        return None

    async def delete_txt_record(
        self,
        domain: str,
        record_name: str,
        value: str,
        provider_ref: str | None = None,
    ) -> None:
        log.info("DNS delete: %s %s via %s", record_name, domain, self._delete_script)
        await self._run(self._delete_script, domain, record_name, value)

    async def _run(self, *argv: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            msg = f"Failed to start DNS script '{argv[0]}': {exc}"
            raise ProviderError(msg, retryable=False) from exc

        try:
            _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError as exc:
            await _kill(proc)
            msg = f"DNS script '{argv[0]}' timed out after {self._timeout}s"
            raise ProviderError(msg) from exc
        except asyncio.CancelledError:
            log.warning("DNS script '%s' cancelled, killing pid %d", argv[0], proc.pid)
            await _kill(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:500]
            msg = f"DNS script '{argv[0]}' exited with status {proc.returncode}: {detail}"
            raise ProviderError(msg)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()
