"""
The results of the reconciles and what they mean for the next scheduling.

The reconcilers return :class:`Action` values (or their shortcuts);
the driver converts them, together with the raised errors, into outcomes,
and schedules the follow-up work according to them.
"""
import dataclasses
import numbers


@dataclasses.dataclass(frozen=True)
class Action:
    """
    What the reconciler wants to happen next for the reconciled object.

    Either nothing until the next change of the object or of its related
    objects (:meth:`await_change`), or a reconcile in some time regardless
    of changes (:meth:`requeue`).
    """
    requeue_after: float | None = None

    @classmethod
    def await_change(cls) -> "Action":
        return cls(requeue_after=None)

    @classmethod
    def requeue(cls, delay: float) -> "Action":
        if delay < 0:
            raise ValueError(f"The requeue delay cannot be negative: {delay!r}")
        return cls(requeue_after=float(delay))


class Outcome:
    """ A base class for the interpreted results of a single reconcile. """


@dataclasses.dataclass(frozen=True)
class Converged(Outcome):
    pass


@dataclasses.dataclass(frozen=True)
class RequeueAfter(Outcome):
    delay: float


@dataclasses.dataclass(frozen=True)
class Error(Outcome):
    cause: Exception


def interpret(result: object) -> Outcome:
    """
    Convert whatever the reconciler has returned into an outcome.

    ``None`` means no follow-up, the same as :meth:`Action.await_change`.
    A plain number of seconds means the same as :meth:`Action.requeue`.
    Anything else is a mistake in the reconciler and is raised as such.
    """
    match result:
        case None:
            return Converged()
        case Outcome():
            return result
        case Action(requeue_after=None):
            return Converged()
        case Action(requeue_after=delay):
            return RequeueAfter(delay=delay)
        case bool():
            raise TypeError(f"Unsupported result of a reconciler: {result!r}")
        case numbers.Real() if result >= 0:
            return RequeueAfter(delay=float(result))
        case _:
            raise TypeError(f"Unsupported result of a reconciler: {result!r}")
