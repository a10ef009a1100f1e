from __future__ import annotations

from pxlcensor.domain.lifecycle import DEFAULT_PIPELINE
from pxlcensor.domain.models import JobClaim, ProcessResult
from pxlcensor.workers.handlers import anonymize
from pxlcensor.workers.handlers.deps import WorkerDeps
from pxlcensor.workers.loop import ProcessHandler


def build_process_handler(deps: WorkerDeps) -> ProcessHandler:
    async def _anonymize(claim: JobClaim) -> ProcessResult:
        return await anonymize.process_claim(deps, claim=claim)

    handlers: dict[str, ProcessHandler] = {
        DEFAULT_PIPELINE: _anonymize,
    }

    async def _dispatch(claim: JobClaim) -> ProcessResult:
        handler = handlers.get(claim.kind)
        if handler is None:
            return ProcessResult(
                success=False,
                detail=f"no handler for pipeline '{claim.kind}'",
                error_code="internal_error",
            )
        return await handler(claim)

    return _dispatch
