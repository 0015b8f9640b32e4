"""
Run the controller without the CLI and poke it with the referer's patches.

Every patch of the referer must cause exactly one reconcile of the main thing.
"""
import asyncio
import logging

import koncile

MAIN = koncile.Resource('clux.dev', 'v1', 'mainthings', kind='MainThing')
REFERER = koncile.Resource('clux.dev', 'v1', 'refererthings', kind='RefererThing')

logger = logging.getLogger(__name__)


async def reconcile_main_thing(name, logger, context, **kwargs):
    logger.info(f"Reconciling {name}")
    await asyncio.sleep(0.001)
    context.put_nowait(name)
    return koncile.Action.await_change()


def error_policy(error, **kwargs):
    return koncile.Action.requeue(15)


async def main(namespace: str = 'default') -> None:
    koncile.configure(verbose=True)
    settings = koncile.ControllerSettings()
    reconciled: asyncio.Queue[str] = asyncio.Queue()
    ready = asyncio.Event()
    stop = asyncio.Event()

    async with koncile.session():
        await koncile.ensure_crds([koncile.make_crd(MAIN), koncile.make_crd(REFERER)], settings=settings)
        mains = koncile.ResourceClient(MAIN, settings=settings)
        referers = koncile.ResourceClient(REFERER, settings=settings)
        await mains.apply({'apiVersion': MAIN.api_version, 'kind': MAIN.kind,
                           'metadata': {'name': 'my-main-thing', 'namespace': namespace},
                           'spec': {}})
        await referers.apply({'apiVersion': REFERER.api_version, 'kind': REFERER.kind,
                              'metadata': {'name': 'my-referer', 'namespace': namespace},
                              'spec': {'mainThingName': 'my-main-thing', 'value': 0}})

        controller = koncile.Controller(MAIN).watches(REFERER, koncile.by_reference(MAIN))
        task = asyncio.create_task(controller.run(
            reconcile_main_thing, error_policy, reconciled,
            settings=settings, namespace=namespace, stop_flag=stop, ready_flag=ready))
        await ready.wait()
        await asyncio.sleep(1)
        while not reconciled.empty():
            reconciled.get_nowait()

        for i in range(1, 10):
            await referers.patch('my-referer', {'spec': {'value': i}}, namespace=namespace)
            logger.info(f"Updated the referer with {i}.")
            await reconciled.get()
            logger.info("Handled the updated reconciliation.")

        stop.set()
        await task


if __name__ == '__main__':
    asyncio.run(main())
