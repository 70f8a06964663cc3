"""
Relationship maintenance

When a document is written, the inverse side of every touched reference is
rewritten so both sides agree. Given a primary document A with reference
field f to resource B whose inverse field is g:

- one-to-one:   A.f is a single id, B.g is a single id
- one-to-many:  A.f is a single id, B.g is a list of ids
- many-to-one:  A.f is a list of ids, B.g is a single id
- many-to-many: A.f is a list of ids, B.g is a list of ids

Every step reads the documents to rewrite and then updates them by _id.
Writes are scoped to the tenant of A when A carries a _tenantId.
"""

from typing import Any, Dict, Iterable, List, Mapping
import mofrs
from .errors import RelationshipRepairError
from .schema import TENANT_FIELD, Reference, ReferenceDescriptor


def get_modified_paths(update: Mapping[str, Any]) -> List[str]:
    """
    :param update: an update document, e.g. {"$set": {"pets": [..], "nested.a": 1}, "name": "x"}
    :return: the top level fields touched by the update: ["pets", "nested", "name"]
    """
    result: List[str] = []
    for key, value in update.items():
        if key.startswith("$"):
            paths = get_modified_paths(value) if isinstance(value, dict) else []
        elif key == "links" and isinstance(value, dict):
            paths = list(value)
        else:
            paths = [key.split(".")[0]]
        for path in paths:
            if path not in result:
                result.append(path)
    return result


class RelationshipMaintainer:
    """
    Keeps the inverse side of references consistent
    :param adapter: StorageAdapter providing find_related and update_related
    """

    def __init__(self, adapter) -> None:
        self.adapter = adapter

    def update_relationships(self, model, document: Dict[str, Any], references: Iterable[ReferenceDescriptor]) -> Dict[str, Any]:
        """
        :param model: ResourceHandle of the written document
        :param document: the stored document
        :param references: the references to repair
        :raises RelationshipRepairError: holding every failure
        """
        errors = []
        for reference in references:
            related = self.adapter.handle(reference.target)
            inverse_spec = related.schema.get(reference.inverse)
            if not isinstance(inverse_spec, Reference) or inverse_spec.target != model.name:
                mofrs.log.debug("%s.%s has no matching inverse field on %s", model.name, reference.path, related.name)
                continue
            inverse = ReferenceDescriptor(
                path=reference.inverse,
                target=model.name,
                singular=inverse_spec.singular,
                inverse=inverse_spec.inverse,
                external=inverse_spec.external,
            )
            if reference.singular and inverse.singular:
                algorithm = self.one_to_one
            elif reference.singular:
                algorithm = self.one_to_many
            elif inverse.singular:
                algorithm = self.many_to_one
            else:
                algorithm = self.many_to_many
            try:
                algorithm(model, related, document, reference, inverse)
            except Exception as exc:
                errors.append(exc)
        if errors:
            raise RelationshipRepairError(model.name, errors)
        return document

    @staticmethod
    def _scope(match: Dict[str, Any], document: Mapping[str, Any]) -> Dict[str, Any]:
        tenant = document.get(TENANT_FIELD)
        if tenant is not None:
            match[TENANT_FIELD] = tenant
        return match

    def _rewrite(self, handle, match: Dict[str, Any], update: Dict[str, Any]) -> List[Any]:
        """
        read the documents matching match, then apply update to them
        :return: the _id values of the rewritten documents
        """
        ids = [document["_id"] for document in self.adapter.find_related(handle, match)]
        if ids:
            self.adapter.update_related(handle, {"_id": {"$in": ids}}, update)
        return ids

    def one_to_one(self, model, related, document, reference, inverse) -> None:
        pk_value = document.get(model.pk)
        target = document.get(reference.path)
        # B documents pointing back at A
        self._rewrite(related, self._scope({inverse.path: pk_value}, document), {"$unset": {inverse.path: ""}})
        if target is None:
            return
        if not self.adapter.find_related(related, self._scope({related.pk: target}, document)):
            mofrs.log.debug("%s %s referenced by %s.%s does not exist", related.name, target, model.name, reference.path)
            return
        # other A documents still holding the target
        self._rewrite(
            model,
            self._scope({reference.path: target, model.pk: {"$ne": pk_value}}, document),
            {"$unset": {reference.path: ""}},
        )
        self._rewrite(related, self._scope({related.pk: target}, document), {"$set": {inverse.path: pk_value}})

    def one_to_many(self, model, related, document, reference, inverse) -> None:
        pk_value = document.get(model.pk)
        target = document.get(reference.path)
        self._rewrite(related, self._scope({inverse.path: pk_value}, document), {"$pull": {inverse.path: pk_value}})
        if target is None:
            return
        self._rewrite(related, self._scope({related.pk: target}, document), {"$addToSet": {inverse.path: pk_value}})

    def many_to_one(self, model, related, document, reference, inverse) -> None:
        pk_value = document.get(model.pk)
        targets = list(document.get(reference.path) or [])
        self._rewrite(
            related,
            self._scope({inverse.path: pk_value, related.pk: {"$nin": targets}}, document),
            {"$unset": {inverse.path: ""}},
        )
        if not targets:
            return
        self._rewrite(related, self._scope({related.pk: {"$in": targets}}, document), {"$set": {inverse.path: pk_value}})
        # a B document has a single owner: drop it from the lists of every other A
        for target in targets:
            self._rewrite(
                model,
                self._scope({model.pk: {"$ne": pk_value}, reference.path: target}, document),
                {"$pull": {reference.path: target}},
            )

    def many_to_many(self, model, related, document, reference, inverse) -> None:
        pk_value = document.get(model.pk)
        targets = list(document.get(reference.path) or [])
        self._rewrite(
            related,
            self._scope({inverse.path: pk_value, related.pk: {"$nin": targets}}, document),
            {"$pull": {inverse.path: pk_value}},
        )
        if not targets:
            return
        self._rewrite(related, self._scope({related.pk: {"$in": targets}}, document), {"$addToSet": {inverse.path: pk_value}})
