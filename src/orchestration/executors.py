# src/orchestration/executors.py

"""
Synchronous executors used inside the tool-calling loop.

Scheduling and verify-client results must be seen by the model before it
writes its reply, so they run during the loop instead of after filtering.
Each call goes through the dispatcher (same handlers, same audit message)
on a worker thread with a bounded wait: a timeout or an unexpected error
becomes a failed result that is fed back to the model.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Optional

from src.actions import SYNCHRONOUS_KINDS, ActionKind, ActionToken, DispatchResult
from src.dispatch import ActionDispatcher, DispatchContext
from src.logger import logger
from src.settings import settings


TIMEOUT_MESSAGE = (
    "Não foi possível concluir a operação a tempo. Informe ao cliente que houve "
    "uma instabilidade e peça para tentar novamente em instantes."
)
FAILURE_MESSAGE = "Erro ao executar a operação. Não confirme nada ao cliente."


class SynchronousExecutor:
    """
    Runs loop-resolved actions with a timeout.

    Args:
        dispatcher: Dispatcher whose handlers do the actual work
        timeout: Seconds to wait per call (settings.scheduling.executor_timeout)
    """

    def __init__(self, dispatcher: ActionDispatcher, timeout: Optional[float] = None):
        self.dispatcher = dispatcher
        self.timeout = float(
            timeout if timeout is not None
            else settings.get_nested("scheduling.executor_timeout", 15)
        )

    @staticmethod
    def handles(kind: ActionKind) -> bool:
        return kind in SYNCHRONOUS_KINDS

    def execute(self, token: ActionToken, ctx: DispatchContext) -> DispatchResult:
        """
        Dispatch one synchronous action and wait at most `timeout` seconds.

        Returns:
            DispatchResult; success=False on timeout or error
        """
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync-action")
        future = pool.submit(self.dispatcher.dispatch, token, ctx)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning(
                "Synchronous action timed out",
                kind=token.kind.value,
                value=token.combined_value,
                timeout=self.timeout,
            )
            return DispatchResult(False, TIMEOUT_MESSAGE, {"timeout": True})
        except Exception as e:
            logger.exception("Synchronous action failed", kind=token.kind.value, error=str(e))
            return DispatchResult(False, FAILURE_MESSAGE)
        finally:
            # A stuck call keeps its thread; the loop does not wait for it
            pool.shutdown(wait=False)
