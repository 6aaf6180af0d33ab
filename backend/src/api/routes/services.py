"""Cross-node service listing."""

from __future__ import annotations

from typing import Dict, List

from fastapi import APIRouter, Depends

from ...models.node import NodeService, ServiceEntry, ServiceListResponse
from ...services.dependencies import get_node_registry
from ...services.node_registry import NodeRegistry
from ..middleware import require_token

router = APIRouter(dependencies=[Depends(require_token)])


@router.get("/api/v1/services", response_model=ServiceListResponse)
async def list_services(registry: NodeRegistry = Depends(get_node_registry)):
    """Every service declared by every node, grouped by node ID.

    Nodes that declare no services are omitted from ``services``.
    """
    grouped: Dict[str, List[NodeService]] = {}
    entries: List[ServiceEntry] = []

    for node in registry.list():
        for key in sorted(node.services):
            service = node.services[key]
            grouped.setdefault(node.id, []).append(service)
            entries.append(
                ServiceEntry(
                    node_id=node.id,
                    node_name=node.name,
                    node_status=node.status,
                    service=service,
                )
            )

    return ServiceListResponse(
        services=grouped,
        entries=entries,
        nodes=len(grouped),
        count=len(entries),
    )
