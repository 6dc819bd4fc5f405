"""Query Rewriter for Encrypted Fields"""

from collections.abc import Mapping
from typing import Any, Dict, List

import structlog

from csfle.errors import NonQueryableField, UnsupportedPredicate
from csfle.models.policy import (
    Algorithm,
    ArrayPolicy,
    EncryptedField,
    FieldEncryptionPolicy,
    PolicyNode,
)
from csfle.services.encryption_service import EncryptionService, OperationKeys

logger = structlog.get_logger()

LOGICAL_OPERATORS = {"$and", "$or", "$nor"}
PASSTHROUGH_OPERATORS = {"$comment"}
# Deterministic encryption preserves equality only
ORDER_OPERATORS = {
    "$gt", "$gte", "$lt", "$lte", "$ne", "$nin", "$not",
    "$regex", "$options", "$mod", "$all", "$elemMatch", "$size", "$type",
}


def _is_operator_expression(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and len(condition) > 0
        and all(isinstance(k, str) and k.startswith("$") for k in condition)
    )


class QueryRewriter:
    """
    Rewrites filters so they can run against encrypted collections

    Equality literals on deterministically encrypted fields are replaced
    by their ciphertext, which is byte-identical to the stored value.
    Anything that cannot be evaluated over ciphertext is rejected before
    it reaches storage.
    """

    def __init__(self, encryption_service: EncryptionService):
        self.encryption_service = encryption_service

    def rewrite(self, query: Mapping, policy: FieldEncryptionPolicy) -> Dict[str, Any]:
        """
        Rewrite a filter document against a policy

        Raises:
            NonQueryableField: predicate targets a randomly encrypted field
            UnsupportedPredicate: range, prefix or inequality predicate on
                an encrypted field, or an operator that cannot be analysed
            TypeMismatch: literal does not match the field's declared type
        """
        if not isinstance(query, Mapping):
            raise UnsupportedPredicate("Query filter must be a document")
        if policy.is_empty:
            return dict(query)

        with self.encryption_service.operation() as keys:
            rewritten = self._rewrite_filter(query, policy, keys)

        logger.info("query_rewritten", fields=len(query))
        return rewritten

    def _rewrite_filter(
        self,
        query: Mapping,
        policy: FieldEncryptionPolicy,
        keys: OperationKeys
    ) -> Dict[str, Any]:
        rewritten: Dict[str, Any] = {}
        for key, condition in query.items():
            if key in LOGICAL_OPERATORS:
                if not isinstance(condition, list) or not condition:
                    raise UnsupportedPredicate(f"{key} requires a non-empty array")
                rewritten[key] = [
                    self._rewrite_filter(self._as_filter(clause, key), policy, keys)
                    for clause in condition
                ]
            elif key in PASSTHROUGH_OPERATORS:
                rewritten[key] = condition
            elif key.startswith("$"):
                raise UnsupportedPredicate(
                    f"Operator {key} cannot be evaluated against encrypted fields"
                )
            else:
                rewritten[key] = self._rewrite_condition(key, condition, policy, keys)
        return rewritten

    @staticmethod
    def _as_filter(clause: Any, operator: str) -> Mapping:
        if not isinstance(clause, Mapping):
            raise UnsupportedPredicate(f"{operator} clauses must be documents")
        return clause

    def _rewrite_condition(
        self,
        path: str,
        condition: Any,
        policy: FieldEncryptionPolicy,
        keys: OperationKeys
    ) -> Any:
        node = policy.locate(path)
        if node is None:
            return condition

        field = self._target_field(node, condition)
        if field is None:
            if _is_operator_expression(condition) and set(condition) <= {"$exists"}:
                return condition
            raise UnsupportedPredicate(
                "Cannot compare a value containing encrypted fields", path=path
            )

        if not _is_operator_expression(condition):
            return self._encrypt_literal(field, condition, path, keys)

        rewritten: Dict[str, Any] = {}
        for operator, operand in condition.items():
            if operator == "$exists":
                rewritten[operator] = operand
            elif operator == "$eq":
                rewritten[operator] = self._encrypt_literal(field, operand, path, keys)
            elif operator == "$in":
                rewritten[operator] = self._encrypt_literals(field, operand, path, keys)
            elif operator in ORDER_OPERATORS:
                raise UnsupportedPredicate(
                    f"{operator} is not supported on encrypted fields", path=path
                )
            else:
                raise UnsupportedPredicate(f"Unknown operator {operator}", path=path)
        return rewritten

    @staticmethod
    def _target_field(node: PolicyNode, condition: Any):
        if isinstance(node, EncryptedField):
            return node
        # Scalar match against an array of encrypted elements
        if isinstance(node, ArrayPolicy) and isinstance(node.items, EncryptedField) \
                and not isinstance(condition, (list, tuple)):
            return node.items
        return None

    def _encrypt_literals(
        self,
        field: EncryptedField,
        operand: Any,
        path: str,
        keys: OperationKeys
    ) -> List[Any]:
        if not isinstance(operand, (list, tuple)):
            raise UnsupportedPredicate("$in requires an array", path=path)
        return [self._encrypt_literal(field, value, path, keys) for value in operand]

    def _encrypt_literal(
        self,
        field: EncryptedField,
        value: Any,
        path: str,
        keys: OperationKeys
    ) -> Any:
        if field.algorithm is not Algorithm.DETERMINISTIC:
            raise NonQueryableField(
                "Randomly encrypted fields cannot be queried", path=path
            )
        return self.encryption_service.encrypt_value(
            value,
            field.algorithm,
            field.key_ref,
            value_type=field.value_type,
            keys=keys,
            path=path
        )
