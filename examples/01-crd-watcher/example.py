import koncile

MAIN = koncile.Resource('clux.dev', 'v1', 'mainthings', kind='MainThing')

by_main_thing_name = koncile.by_reference(MAIN)


@koncile.on.reconcile(*MAIN, kind='MainThing')
async def reconcile_main_thing(name, namespace, logger, **kwargs):
    logger.info(f"Reconciling {namespace}/{name}")
    return koncile.Action.await_change()


@koncile.on.mapping('clux.dev', 'v1', 'refererthings', primary=MAIN)
def referer_to_main(body, **kwargs):
    return by_main_thing_name(body)
