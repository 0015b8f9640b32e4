import dataclasses
import functools
from collections.abc import Callable, Collection, Mapping
from typing import Any

import click
import yaml

from koncile._cogs.aiokits import aioflags
from koncile._cogs.configs import configuration
from koncile._cogs.helpers import loaders
from koncile._cogs.structs import credentials
from koncile._core.actions import loggers
from koncile._core.intents import registries
from koncile._core.reactor import running


@dataclasses.dataclass()
class CLIControls:
    """ `KoncileRunner` controls, which are impossible to pass via CLI. """
    ready_flag: aioflags.Flag | None = None
    stop_flag: aioflags.Flag | None = None
    registry: registries.ControllerRegistry | None = None
    settings: configuration.ControllerSettings | None = None
    connection: credentials.ConnectionInfo | None = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: bool | None = False,
                log_refkey: str | None = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


def load_manifests(paths: Collection[str]) -> list[Mapping[str, Any]]:
    """ Read all YAML documents from the files; skip the empty ones. """
    manifests: list[Mapping[str, Any]] = []
    for path in paths:
        with open(path, encoding='utf-8') as f:
            manifests.extend(doc for doc in yaml.safe_load_all(f) if doc)
    for manifest in manifests:
        if not isinstance(manifest, Mapping) or manifest.get('kind') != 'CustomResourceDefinition':
            kind = manifest.get('kind') if isinstance(manifest, Mapping) else type(manifest).__name__
            raise click.UsageError(f"Only CustomResourceDefinitions can be applied, got {kind!r}.")
    return manifests


@click.version_option(prog_name='koncile')
@click.group(name='koncile', context_settings=dict(
    auto_envvar_prefix='KONCILE',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-A', '--all-namespaces', 'clusterwide', is_flag=True)
@click.option('-n', '--namespace', 'namespace', type=str)
@click.option('--crd', 'crd_paths', multiple=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--concurrency', type=click.IntRange(min=1))
@click.option('--error-backoff', type=click.FloatRange(min=0))
@click.option('-m', '--module', 'modules', multiple=True)
@click.argument('paths', nargs=-1)
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        paths: list[str],
        modules: list[str],
        crd_paths: list[str],
        namespace: str | None,
        clusterwide: bool,
        concurrency: int | None,
        error_backoff: float | None,
) -> None:
    """ Start a controller process and reconcile until stopped. """
    if namespace and clusterwide:
        raise click.UsageError("Either --namespace or --all-namespaces can be used, not both.")
    if __controls.registry is not None:
        registries.set_default_registry(__controls.registry)
    crds = load_manifests(crd_paths)
    settings = __controls.settings if __controls.settings is not None else configuration.ControllerSettings()
    if concurrency is not None:
        settings.reconciling.concurrency = concurrency
    if error_backoff is not None:
        settings.reconciling.error_backoff = error_backoff
    loaders.preload(
        paths=paths,
        modules=modules,
    )
    return running.run(
        namespace=None if clusterwide else namespace,
        crds=crds,
        registry=__controls.registry,
        settings=settings,
        connection=__controls.connection,
        stop_flag=__controls.stop_flag,
        ready_flag=__controls.ready_flag,
    )


@main.command()
@logging_options
@click.argument('paths', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.make_pass_decorator(CLIControls, ensure=True)
def apply(
        __controls: CLIControls,
        paths: list[str],
) -> None:
    """ Apply the CRDs from the YAML files and exit. """
    crds = load_manifests(paths)
    return running.apply(
        crds=crds,
        settings=__controls.settings,
        connection=__controls.connection,
    )
