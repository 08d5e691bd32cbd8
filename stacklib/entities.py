"""
Catalog entity construction.

Identities are recomputed from scratch on every cycle, so they must be pure
functions of stable inputs: the same stack (or stack + logical resource id)
always yields the same name, and the catalog sees repeated full mutations as
idempotent upserts.

Building happens in two steps:
1. ``EntityBuilder.build`` turns one scanned stack into entity nodes plus
   dependency edges, without touching any entity outside that stack.
2. ``assemble_snapshot`` runs once per cycle over everything collected:
   it collapses duplicate identities (shared runtimes) and applies every
   edge to both ends (dependsOn / dependencyOf).
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence
from urllib.parse import quote

from .constants import (
    ANNOTATION_ACCOUNT_ID,
    ANNOTATION_FUNCTION_NAME,
    ANNOTATION_LOGICAL_ID,
    ANNOTATION_LOOKED_UP_WITH,
    ANNOTATION_REGION,
    ANNOTATION_STACK_ID,
    ANNOTATION_STACK_NAME,
    CONSOLE_LINK_TITLE,
    DEFAULT_ANNOTATION_NAMESPACE,
    DEFAULT_LIFECYCLE,
    DEFAULT_LIFECYCLE_TAG,
    DEFAULT_OWNER,
    DEFAULT_OWNER_TAG,
    DEFAULT_PROJECT_TAG,
    ENTITY_REF_KIND,
    FUNCTION_IDENTITY_PREFIX,
    FUNCTION_RESOURCE_TYPES,
    IDENTITY_DIGEST_BYTES,
    RUNTIME_IDENTITY_PREFIX,
    RUNTIME_LIFECYCLE,
    RUNTIME_OWNER,
    STACK_IDENTITY_PREFIX,
    TYPE_FUNCTION,
    TYPE_RUNTIME,
    TYPE_STACK,
)
from .models import (
    BuildResult,
    DependencyEdge,
    Entity,
    EntityLink,
    EntityMetadata,
    EntitySpec,
    RefreshSnapshot,
    ResourceSummary,
    ScannedStack,
    StackRecord,
)

logger = logging.getLogger(__name__)

# Type tag -> identity prefix for hashed identities
HASHED_IDENTITY_PREFIXES = {
    TYPE_STACK: STACK_IDENTITY_PREFIX,
    TYPE_FUNCTION: FUNCTION_IDENTITY_PREFIX,
}


def identity(type_tag: str, stable_inputs: Sequence[str]) -> str:
    """
    Compute the catalog identity of an entity.

    Stack and function identities are the type prefix followed by the
    hex-encoded SHAKE-256 digest (27 bytes) of the concatenated inputs, so
    they have a fixed length whatever the input length. Runtime identities
    are the plain runtime name behind a fixed prefix, so every function
    declaring the same runtime points at the same entity.

    >>> identity("aws-lambda-runtime", ["nodejs18.x"])
    'aws-lambda-runtime-nodejs18.x'
    """
    if not stable_inputs or any(not value for value in stable_inputs):
        raise ValueError(f"identity for {type_tag} needs non-empty inputs, got {stable_inputs!r}")

    if type_tag == TYPE_RUNTIME:
        return RUNTIME_IDENTITY_PREFIX + ''.join(stable_inputs)

    try:
        prefix = HASHED_IDENTITY_PREFIXES[type_tag]
    except KeyError:
        raise ValueError(f"Unknown entity type tag: {type_tag}") from None

    digest = hashlib.shake_256(''.join(stable_inputs).encode('utf-8'))
    return prefix + digest.hexdigest(IDENTITY_DIGEST_BYTES)


def stack_identity(stack_id: str) -> str:
    return identity(TYPE_STACK, [stack_id])


def function_identity(stack_id: str, logical_id: str) -> str:
    return identity(TYPE_FUNCTION, [stack_id, logical_id])


def runtime_identity(runtime: str) -> str:
    return identity(TYPE_RUNTIME, [runtime])


def entity_ref(name: str) -> str:
    """Reference to an entity as used in dependsOn/dependencyOf."""
    return f"{ENTITY_REF_KIND}:{name}"


def console_url(region: str, stack_id: str) -> str:
    """Deep link to the stack in the CloudFormation console."""
    encoded = quote(stack_id, safe="-_.!~*'()")
    return (
        f"https://{region}.console.aws.amazon.com/cloudformation/home?region={region}"
        f"#/stacks/stackinfo?filteringText=&filteringStatus=active&viewNested=true"
        f"&stackId={encoded}"
    )


@dataclass
class EntityBuilder:
    """Turns scanned stacks into catalog entities and dependency edges."""
    annotation_namespace: str = DEFAULT_ANNOTATION_NAMESPACE
    lifecycle_tag: str = DEFAULT_LIFECYCLE_TAG
    owner_tag: str = DEFAULT_OWNER_TAG
    project_tag: str = DEFAULT_PROJECT_TAG
    default_lifecycle: str = DEFAULT_LIFECYCLE
    default_owner: str = DEFAULT_OWNER

    def annotation(self, name: str) -> str:
        return f"{self.annotation_namespace.rstrip('/')}/{name}"

    def _base_annotations(self, stack: StackRecord, role_arn: str) -> Dict[str, str]:
        return {
            self.annotation(ANNOTATION_REGION): stack.region,
            self.annotation(ANNOTATION_ACCOUNT_ID): stack.account_id,
            self.annotation(ANNOTATION_LOOKED_UP_WITH): role_arn,
            self.annotation(ANNOTATION_STACK_NAME): stack.stack_name,
        }

    def _links(self, stack: StackRecord) -> List[EntityLink]:
        return [EntityLink(url=console_url(stack.region, stack.stack_id), title=CONSOLE_LINK_TITLE)]

    def _lifecycle(self, stack: StackRecord) -> str:
        return stack.tags.get(self.lifecycle_tag) or self.default_lifecycle

    def _owner(self, stack: StackRecord) -> str:
        return stack.tags.get(self.owner_tag) or self.default_owner

    def stack_entity(self, stack: StackRecord, role_arn: str) -> Entity:
        annotations = self._base_annotations(stack, role_arn)
        annotations[self.annotation(ANNOTATION_STACK_ID)] = stack.stack_id
        return Entity(
            metadata=EntityMetadata(
                name=stack_identity(stack.stack_id),
                description=f"Auto-detected AWS CloudFormation stack: {stack.stack_name}",
                annotations=annotations,
                links=self._links(stack),
            ),
            spec=EntitySpec(
                type=TYPE_STACK,
                lifecycle=self._lifecycle(stack),
                owner=self._owner(stack),
                system=stack.tags.get(self.project_tag) or None,
            ),
        )

    def function_entity(self, stack: StackRecord, resource: ResourceSummary, role_arn: str) -> Entity:
        annotations = self._base_annotations(stack, role_arn)
        annotations[self.annotation(ANNOTATION_FUNCTION_NAME)] = resource.physical_id
        annotations[self.annotation(ANNOTATION_LOGICAL_ID)] = resource.logical_id
        return Entity(
            metadata=EntityMetadata(
                name=function_identity(stack.stack_id, resource.logical_id),
                description=f"Auto-detected AWS Lambda function: {resource.physical_id}",
                annotations=annotations,
                links=self._links(stack),
            ),
            spec=EntitySpec(
                type=TYPE_FUNCTION,
                lifecycle=self._lifecycle(stack),
                owner=self._owner(stack),
            ),
        )

    def runtime_entity(self, runtime: str, stack: StackRecord, role_arn: str) -> Entity:
        return Entity(
            metadata=EntityMetadata(
                name=runtime_identity(runtime),
                description=f"Auto-detected AWS Lambda runtime: {runtime}",
                annotations=self._base_annotations(stack, role_arn),
                links=self._links(stack),
            ),
            spec=EntitySpec(
                type=TYPE_RUNTIME,
                lifecycle=RUNTIME_LIFECYCLE,
                owner=RUNTIME_OWNER,
            ),
        )

    def build(self, scanned: ScannedStack) -> BuildResult:
        """
        Build the entities and edges of one scanned stack.

        Function resources produce a function entity (plus its runtime when
        the template declares one); other resource types are ignored.
        """
        stack = scanned.stack
        result = BuildResult()
        stack_entity = self.stack_entity(stack, scanned.role_arn)
        result.entities.append(stack_entity)

        for resource in scanned.resources:
            if resource.resource_type not in FUNCTION_RESOURCE_TYPES:
                continue

            function = self.function_entity(stack, resource, scanned.role_arn)
            result.entities.append(function)
            result.edges.append(DependencyEdge(dependent=stack_entity.identity, dependency=function.identity))

            runtime = scanned.template.property(resource.logical_id, 'Runtime')
            if not isinstance(runtime, str) or not runtime:
                # Container image functions and unresolved intrinsics have no runtime string
                logger.debug(f"Function {resource.logical_id} in stack {stack.stack_name} "
                             f"declares no literal runtime")
                continue

            runtime_entity = self.runtime_entity(runtime, stack, scanned.role_arn)
            result.entities.append(runtime_entity)
            result.edges.append(DependencyEdge(dependent=function.identity, dependency=runtime_entity.identity))

        return result


def _representative_key(entity: Entity):
    annotations = entity.metadata.annotations
    return (
        sorted(annotations.items()),
        [link.url for link in entity.metadata.links],
    )


def assemble_snapshot(entities: Iterable[Entity], edges: Iterable[DependencyEdge]) -> RefreshSnapshot:
    """
    Deduplicate entities by identity and apply every edge to both ends.

    When the same identity was built more than once (a runtime shared by
    several functions) a single entity is kept: the one with the smallest
    annotations/links, so the choice does not depend on which account
    finished first. Edges pointing at identities that are not in the set
    are dropped.
    """
    by_identity: Dict[str, Entity] = {}
    for entity in entities:
        current = by_identity.get(entity.identity)
        if current is None or _representative_key(entity) < _representative_key(current):
            by_identity[entity.identity] = entity

    depends_on: Dict[str, set] = {name: set() for name in by_identity}
    dependency_of: Dict[str, set] = {name: set() for name in by_identity}
    for edge in set(edges):
        if edge.dependent not in by_identity or edge.dependency not in by_identity:
            logger.debug(f"Dropping dangling edge {edge.dependent} -> {edge.dependency}")
            continue
        depends_on[edge.dependent].add(entity_ref(edge.dependency))
        dependency_of[edge.dependency].add(entity_ref(edge.dependent))

    snapshot_entities = []
    for name in sorted(by_identity):
        source = by_identity[name]
        snapshot_entities.append(Entity(
            metadata=source.metadata,
            spec=EntitySpec(
                type=source.spec.type,
                lifecycle=source.spec.lifecycle,
                owner=source.spec.owner,
                system=source.spec.system,
                dependsOn=sorted(depends_on[name]),
                dependencyOf=sorted(dependency_of[name]),
            ),
            apiVersion=source.apiVersion,
            kind=source.kind,
        ))
    return RefreshSnapshot(entities=snapshot_entities)


def builder_from_settings(settings) -> EntityBuilder:
    """EntityBuilder configured from engine Settings."""
    return EntityBuilder(
        annotation_namespace=settings.annotation_namespace,
        lifecycle_tag=settings.lifecycle_tag,
        owner_tag=settings.owner_tag,
        project_tag=settings.project_tag,
        default_lifecycle=settings.default_lifecycle,
        default_owner=settings.default_owner,
    )

