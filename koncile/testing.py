"""
Running a koncile-based controller alongside the tests.

This module is a part of the library's public interface.
"""
import concurrent.futures
import contextlib
import threading
import types
from typing import TYPE_CHECKING, Any, Literal

import click.testing

from koncile import cli
from koncile._cogs.configs import configuration
from koncile._cogs.structs import credentials
from koncile._core.intents import registries

if TYPE_CHECKING:
    ResultFuture = concurrent.futures.Future[click.testing.Result]
    _Base = contextlib.AbstractContextManager["KoncileRunner"]
else:
    ResultFuture = concurrent.futures.Future
    _Base = contextlib.AbstractContextManager


class KoncileRunner(_Base):
    """
    Run the ``koncile`` CLI in a thread while the ``with`` block is executed.

    Usage::

        from koncile.testing import KoncileRunner

        with KoncileRunner(['run', '-A', '--verbose', 'examples/01-crd-watcher/example.py']) as runner:
            kubectl('apply', '-f', 'examples/obj.yaml')
            time.sleep(3)

        assert runner.exit_code == 0
        assert runner.exception is None
        assert 'Reconciling' in runner.output

    The arguments go to :meth:`click.testing.CliRunner.invoke` as they are.
    The block starts once the controller has started its watchers & drivers
    (or has failed to start). At the block's exit, the controller is stopped,
    and its CLI result becomes available via the properties.

    A thread is used instead of a process, so that the mocks' calls are seen
    by the tests, and the controller's errors are re-raised in the test
    (unless ``reraise=False``).
    """

    def __init__(
            self,
            *args: Any,
            reraise: bool = True,
            timeout: float | None = None,
            registry: registries.ControllerRegistry | None = None,
            settings: configuration.ControllerSettings | None = None,
            connection: credentials.ConnectionInfo | None = None,
            **kwargs: Any,
    ):
        super().__init__()
        self.args = args
        self.kwargs = kwargs
        self.reraise = reraise
        self.timeout = timeout
        self.controls = cli.CLIControls(
            registry=registry,
            settings=settings,
            connection=connection,
            ready_flag=threading.Event(),
            stop_flag=threading.Event(),
        )
        self.future: ResultFuture = concurrent.futures.Future()
        self._thread = threading.Thread(target=self._invoke, name='koncile-runner')

    def __enter__(self) -> "KoncileRunner":
        ready = self.controls.ready_flag
        assert isinstance(ready, threading.Event)
        self._thread.start()
        while self._thread.is_alive() and not ready.wait(timeout=0.1):
            pass
        return self

    def __exit__(
            self,
            exc_type: type[BaseException] | None,
            exc_val: BaseException | None,
            exc_tb: types.TracebackType | None,
    ) -> Literal[False]:
        stop = self.controls.stop_flag
        assert isinstance(stop, threading.Event)
        stop.set()
        self._thread.join(timeout=self.timeout)
        if self._thread.is_alive():
            raise Exception("The controller didn't stop, still running.")

        # A failure of the runner itself, not of the controller.
        error = self.future.exception()
        if error is not None:
            raise error from exc_val

        error = self.exception
        if error is not None and self.reraise and not isinstance(error, SystemExit):
            raise error from exc_val
        return False

    def _invoke(self) -> None:
        # The CLI command runs its own event loop in this thread.
        try:
            result = click.testing.CliRunner().invoke(cli.main, *self.args, **self.kwargs, obj=self.controls)
        except BaseException as e:
            self.future.set_exception(e)
        else:
            self.future.set_result(result)

    @property
    def output(self) -> str:
        return self.future.result().output

    @property
    def exit_code(self) -> int:
        return self.future.result().exit_code

    @property
    def exception(self) -> BaseException | None:
        return self.future.result().exception
