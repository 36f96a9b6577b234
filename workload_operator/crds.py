import copy
import logging

from easykube import ApiError


logger = logging.getLogger(__name__)


CRD_API_VERSION = "apiextensions.k8s.io/v1"


async def sync_crds(ekclient, crds, is_upgrade = False):
    """
    Brings the CRDs bundled with a chart up to date in the cluster of the given client.

    Helm only ever creates CRDs, so any CRD that already exists is replaced here using
    its current resource version. On install, CRDs that do not exist yet are left for
    Helm to create. On upgrade, they are created here.
    """
    if not crds:
        return
    ekcrds = await ekclient.api(CRD_API_VERSION).resource("customresourcedefinitions")
    for crd in crds:
        name = crd["metadata"]["name"]
        try:
            existing = await ekcrds.fetch(name)
        except ApiError as exc:
            if exc.status_code != 404:
                raise
            if is_upgrade:
                logger.info("creating CRD %s", name)
                await ekcrds.create(crd)
            continue
        updated = copy.deepcopy(crd)
        updated["metadata"]["resourceVersion"] = existing["metadata"]["resourceVersion"]
        logger.info("updating CRD %s", name)
        await ekcrds.replace(name, updated)
