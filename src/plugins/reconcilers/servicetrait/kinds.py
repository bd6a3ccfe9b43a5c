"""
Workload kind classification.

Converts a generic object into one of the typed workload views the Service
synthesis understands. The set of views is closed: anything else is an
UnsupportedKindError, and so is an object that cannot be re-shaped into
its view.
"""

import logging
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, Field, ValidationError

from plugins.reconcilers.servicetrait.errors import UnsupportedKindError

logger = logging.getLogger(__name__)

APPS_API_VERSION = "apps/v1"
KIND_STATEFULSET = "StatefulSet"
KIND_DEPLOYMENT = "Deployment"


class _View(BaseModel):
    """Typed view over part of an object; unknown fields are ignored."""

    class Config:
        extra = "ignore"
        populate_by_name = True


class ContainerPort(_View):
    container_port: int = Field(..., alias="containerPort")
    name: Optional[str] = None
    protocol: Optional[str] = None


class Container(_View):
    name: str = ""
    image: Optional[str] = None
    ports: List[ContainerPort] = Field(default_factory=list)


class PodSpec(_View):
    containers: List[Container] = Field(default_factory=list)


class PodTemplate(_View):
    spec: PodSpec = Field(default_factory=PodSpec)


class LabelSelector(_View):
    match_labels: Dict[str, str] = Field(default_factory=dict, alias="matchLabels")


class WorkloadSpec(_View):
    replicas: Optional[int] = None
    selector: LabelSelector = Field(default_factory=LabelSelector)
    template: PodTemplate = Field(default_factory=PodTemplate)


class ObjectMeta(_View):
    name: str
    namespace: str = ""
    uid: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class _Workload(_View):
    api_version: str = Field(..., alias="apiVersion")
    metadata: ObjectMeta
    spec: WorkloadSpec = Field(default_factory=WorkloadSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def containers(self) -> List[Container]:
        return self.spec.template.spec.containers


class StatefulWorkload(_Workload):
    """Typed view of a StatefulSet."""

    kind: Literal["StatefulSet"]


class ScalableWorkload(_Workload):
    """Typed view of a Deployment."""

    kind: Literal["Deployment"]


ClassifiedWorkload = Union[StatefulWorkload, ScalableWorkload]

WORKLOAD_VIEWS: Dict[Tuple[str, str], Type[_Workload]] = {
    (APPS_API_VERSION, KIND_STATEFULSET): StatefulWorkload,
    (APPS_API_VERSION, KIND_DEPLOYMENT): ScalableWorkload,
}


def classify(obj: Dict[str, Any]) -> ClassifiedWorkload:
    """
    Classify an object into its typed workload view.

    Raises:
        UnsupportedKindError: If the apiVersion and kind are not recognised,
            or the object does not have the shape of its kind.
    """
    kind = obj.get("kind", "")
    api_version = obj.get("apiVersion", "")
    view = WORKLOAD_VIEWS.get((api_version, kind))
    if view is None:
        identity = f"{api_version or '<empty>'} {kind or '<empty>'}"
        raise UnsupportedKindError(kind, f"{identity} is not supported")

    try:
        return view.model_validate(obj)
    except ValidationError as e:
        name = obj.get("metadata", {}).get("name", "")
        logger.error(f"Failed to convert {kind} {name} to its typed view: {e}")
        raise UnsupportedKindError(
            kind, f"{kind} {name} does not match the {kind} schema"
        ) from e
