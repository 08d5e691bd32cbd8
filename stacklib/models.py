"""
Data models for the stack catalog provider.

Account, StackRecord, ResourceSummary and TemplateDocument only live for one
refresh cycle. Entity is the catalog node handed to the sink.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .constants import ENTITY_API_VERSION, ENTITY_KIND


@dataclass(frozen=True)
class Account:
    """One account of the organization."""
    id: str
    name: str = ""
    status: str = ""


@dataclass(frozen=True)
class StackRecord:
    """A CloudFormation stack as returned by DescribeStacks."""
    stack_id: str
    stack_name: str
    status: str
    account_id: str
    region: str
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceSummary:
    """One resource inside a stack, from ListStackResources."""
    logical_id: str
    physical_id: str
    resource_type: str
    status: str = ""


@dataclass
class TemplateDocument:
    """
    Parsed stack template, reduced to what the builder needs: the declared
    type and properties of each resource, keyed by logical resource id.
    """
    resources: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_template(cls, template: Any) -> "TemplateDocument":
        """Build a document from a parsed template mapping."""
        if not isinstance(template, dict):
            return cls()
        resources = template.get('Resources') or {}
        if not isinstance(resources, dict):
            return cls()
        return cls(resources={
            logical_id: definition
            for logical_id, definition in resources.items()
            if isinstance(definition, dict)
        })

    def properties(self, logical_id: str) -> Dict[str, Any]:
        """Declared properties of a resource ({} when the resource is unknown)."""
        properties = self.resources.get(logical_id, {}).get('Properties')
        return properties if isinstance(properties, dict) else {}

    def property(self, logical_id: str, name: str) -> Optional[Any]:
        return self.properties(logical_id).get(name)


@dataclass
class ScannedStack:
    """Everything the scanner learned about one in-scope stack."""
    stack: StackRecord
    resources: List[ResourceSummary]
    template: TemplateDocument
    role_arn: str = ""


@dataclass(frozen=True)
class DependencyEdge:
    """``dependent`` dependsOn ``dependency``; the reverse is its dependencyOf."""
    dependent: str
    dependency: str


@dataclass
class EntityLink:
    url: str
    title: str = ""


@dataclass
class EntityMetadata:
    name: str
    description: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    links: List[EntityLink] = field(default_factory=list)


@dataclass
class EntitySpec:
    type: str
    lifecycle: str
    owner: str
    system: Optional[str] = None
    dependsOn: List[str] = field(default_factory=list)
    dependencyOf: List[str] = field(default_factory=list)


@dataclass
class Entity:
    """
    Catalog node. ``metadata.name`` is the entity identity.

    Stack, function and runtime entities share this shape and differ only by
    ``spec.type``.
    """
    metadata: EntityMetadata
    spec: EntitySpec
    apiVersion: str = ENTITY_API_VERSION
    kind: str = ENTITY_KIND

    @property
    def identity(self) -> str:
        return self.metadata.name

    @property
    def entity_type(self) -> str:
        return self.spec.type

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the catalog wire format."""
        data = asdict(self)
        if data['spec'].get('system') is None:
            data['spec'].pop('system', None)
        return {
            'apiVersion': data['apiVersion'],
            'kind': data['kind'],
            'metadata': data['metadata'],
            'spec': data['spec'],
        }


@dataclass
class BuildResult:
    """Entities and edges produced from one scanned stack."""
    entities: List[Entity] = field(default_factory=list)
    edges: List[DependencyEdge] = field(default_factory=list)

    def extend(self, other: "BuildResult") -> None:
        self.entities.extend(other.entities)
        self.edges.extend(other.edges)


@dataclass
class RefreshSnapshot:
    """Complete, deduplicated entity set produced by one cycle."""
    entities: List[Entity] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entities)

    def identities(self) -> List[str]:
        return [entity.identity for entity in self.entities]

    def get(self, identity: str) -> Optional[Entity]:
        for entity in self.entities:
            if entity.identity == identity:
                return entity
        return None

    def of_type(self, entity_type: str) -> List[Entity]:
        return [entity for entity in self.entities if entity.entity_type == entity_type]
