"""
A programmatic way to declare and run a controller, without the decorators.

Example::

    controller = koncile.Controller(main_things)
    controller.watches(referer_things, koncile.by_reference(main_things))
    await controller.run(reconcile, error_policy=koncile.fixed_backoff(15))
"""
from typing import Any

from koncile._cogs.aiokits import aioflags
from koncile._cogs.configs import configuration
from koncile._cogs.structs import credentials, references
from koncile._core.actions import invocation, policies
from koncile._core.intents import registries
from koncile._core.reactor import mapping, running


class Controller:
    """
    A builder of one controller: a primary resource and its secondary watches.
    """

    def __init__(
            self,
            resource: references.Resource,
            config: references.WatchConfig | None = None,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.config = config
        self._watches: list[registries.WatchSpec] = []

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} for {self.resource}>'

    def watches(
            self,
            resource: references.Resource,
            mapper: mapping.Mapper,
            config: references.WatchConfig | None = None,
    ) -> "Controller":
        """
        Watch a secondary resource and reconcile the primary objects it maps to.
        """
        self._watches.append(registries.WatchSpec(
            id=registries.get_callable_id(mapper),
            resource=resource,
            mapper=mapper,
            config=config,
        ))
        return self

    def build(
            self,
            reconciler: invocation.Invokable,
            error_policy: policies.ErrorPolicy | None = None,
            context: Any = None,
    ) -> registries.ControllerSpec:
        return registries.ControllerSpec(
            id=registries.get_callable_id(reconciler),
            resource=self.resource,
            reconciler=reconciler,
            config=self.config,
            error_policy=error_policy,
            context=context,
            watches=tuple(self._watches),
        )

    async def run(
            self,
            reconciler: invocation.Invokable,
            error_policy: policies.ErrorPolicy | None = None,
            context: Any = None,
            *,
            settings: configuration.ControllerSettings | None = None,
            connection: credentials.ConnectionInfo | None = None,
            namespace: str | None = None,
            stop_flag: aioflags.Flag | None = None,
            ready_flag: aioflags.Flag | None = None,
    ) -> None:
        """
        Run this controller alone until stopped (by signals or by the stop-flag).
        """
        registry = registries.ControllerRegistry()
        registry.register_controller(self.build(reconciler, error_policy, context))
        await running.operator(
            registry=registry,
            settings=settings,
            connection=connection,
            namespace=namespace,
            stop_flag=stop_flag,
            ready_flag=ready_flag,
        )
