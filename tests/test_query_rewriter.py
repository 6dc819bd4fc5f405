"""Tests for the Query Rewriter"""

import pytest

from csfle.errors import NonQueryableField, TypeMismatch, UnsupportedPredicate
from csfle.models.policy import Algorithm, BsonType, FieldEncryptionPolicy
from csfle.rules.schema_compiler import compile_schema
from csfle.services.crypto import is_encrypted


class TestEqualityRewrite:
    """Test equality predicates become ciphertext comparisons"""

    def test_literal_matches_stored_ciphertext(self, rewriter, engine, patient_policy, data_key_id):
        """Test the rewritten literal is byte-identical to encrypt_value"""
        rewritten = rewriter.rewrite({"ssn": 241014209}, patient_policy)
        expected = engine.encrypt_value(241014209, Algorithm.DETERMINISTIC, data_key_id, BsonType.INT)
        assert rewritten == {"ssn": expected}

    def test_find_encrypted_document(self, rewriter, engine, patient, patient_policy, find):
        """Test a rewritten filter finds the stored encrypted document"""
        stored = [
            engine.encrypt(patient, patient_policy),
            engine.encrypt({**patient, "name": "Jane Doe", "ssn": 111223333}, patient_policy),
        ]
        matches = find(stored, rewriter.rewrite({"ssn": 241014209}, patient_policy))

        assert len(matches) == 1
        assert engine.decrypt(matches[0])["name"] == "Jon Doe"

    def test_different_key_finds_nothing(
        self, rewriter, engine, patient, patient_policy, client_encryption, schema_for_key, find
    ):
        stored = [engine.encrypt(patient, patient_policy)]
        other_key = client_encryption.create_data_key("local")
        other_policy = compile_schema(schema_for_key(other_key))

        assert find(stored, rewriter.rewrite({"ssn": 241014209}, other_policy)) == []

    def test_nested_path(self, rewriter, engine, patient, patient_policy, find):
        stored = [engine.encrypt(patient, patient_policy)]
        query = rewriter.rewrite({"insurance.policyNumber": 123142}, patient_policy)

        assert is_encrypted(query["insurance.policyNumber"])
        assert len(find(stored, query)) == 1

    def test_eq_operator(self, rewriter, patient_policy):
        rewritten = rewriter.rewrite({"ssn": {"$eq": 241014209}}, patient_policy)
        assert is_encrypted(rewritten["ssn"]["$eq"])

    def test_in_operator(self, rewriter, engine, patient, patient_policy, find):
        stored = [engine.encrypt(patient, patient_policy)]
        query = rewriter.rewrite({"ssn": {"$in": [1, 241014209]}}, patient_policy)

        assert all(is_encrypted(value) for value in query["ssn"]["$in"])
        assert len(find(stored, query)) == 1

    def test_logical_operators(self, rewriter, engine, patient, patient_policy, find):
        stored = [engine.encrypt(patient, patient_policy)]
        query = rewriter.rewrite({
            "$or": [{"ssn": 1}, {"$and": [{"ssn": 241014209}, {"name": "Jon Doe"}]}]
        }, patient_policy)

        assert query["$or"][1]["$and"][1] == {"name": "Jon Doe"}
        assert len(find(stored, query)) == 1

    def test_array_of_encrypted_elements(self, rewriter, data_key_id):
        policy = compile_schema({
            "encryptMetadata": {"keyId": [data_key_id]},
            "properties": {
                "aliases": {
                    "bsonType": "array",
                    "items": {"encrypt": {"bsonType": "string", "algorithm": Algorithm.DETERMINISTIC.value}}
                }
            }
        })
        rewritten = rewriter.rewrite({"aliases": "Johnny"}, policy)
        assert is_encrypted(rewritten["aliases"])


class TestPassthrough:
    """Test predicates that need no rewriting"""

    def test_uncovered_fields_unchanged(self, rewriter, patient_policy):
        query = {"name": "Jon Doe", "insurance.provider": {"$regex": "^Maest"}, "age": {"$gt": 30}}
        assert rewriter.rewrite(query, patient_policy) == query

    def test_empty_policy(self, rewriter):
        query = {"ssn": {"$gt": 1}}
        assert rewriter.rewrite(query, FieldEncryptionPolicy()) == query

    def test_exists_on_encrypted_field(self, rewriter, patient_policy):
        query = {"bloodType": {"$exists": True}, "insurance": {"$exists": False}}
        assert rewriter.rewrite(query, patient_policy) == query

    def test_comment(self, rewriter, patient_policy):
        rewritten = rewriter.rewrite({"$comment": "audit", "ssn": 241014209}, patient_policy)
        assert rewritten["$comment"] == "audit"


class TestRejectedQueries:
    """Test predicates that cannot run over ciphertext"""

    @pytest.mark.parametrize("field", ["bloodType", "medicalRecords"])
    def test_random_field_not_queryable(self, rewriter, patient_policy, field):
        with pytest.raises(NonQueryableField) as exc:
            rewriter.rewrite({field: "AB+"}, patient_policy)
        assert exc.value.path == field

    def test_random_field_in_operator(self, rewriter, patient_policy):
        with pytest.raises(NonQueryableField):
            rewriter.rewrite({"bloodType": {"$in": ["AB+", "O-"]}}, patient_policy)

    @pytest.mark.parametrize("operator", ["$gt", "$gte", "$lt", "$lte", "$ne", "$nin", "$regex"])
    def test_order_operators_rejected(self, rewriter, patient_policy, operator):
        with pytest.raises(UnsupportedPredicate):
            rewriter.rewrite({"ssn": {operator: 241014209}}, patient_policy)

    def test_unknown_operator_rejected(self, rewriter, patient_policy):
        with pytest.raises(UnsupportedPredicate):
            rewriter.rewrite({"ssn": {"$near": [0, 0]}}, patient_policy)

    @pytest.mark.parametrize("operator", ["$expr", "$where", "$text"])
    def test_top_level_operators_rejected(self, rewriter, patient_policy, operator):
        with pytest.raises(UnsupportedPredicate):
            rewriter.rewrite({operator: {}}, patient_policy)

    def test_path_inside_encrypted_value(self, rewriter, patient_policy):
        with pytest.raises(NonQueryableField):
            rewriter.rewrite({"medicalRecords.weight": 180}, patient_policy)

    def test_whole_document_comparison(self, rewriter, patient_policy):
        with pytest.raises(UnsupportedPredicate):
            rewriter.rewrite({"insurance": {"policyNumber": 123142, "provider": "MaestCare"}}, patient_policy)

    def test_literal_type_checked(self, rewriter, patient_policy):
        with pytest.raises(TypeMismatch):
            rewriter.rewrite({"ssn": "241-01-4209"}, patient_policy)

    def test_malformed_logical_operator(self, rewriter, patient_policy):
        with pytest.raises(UnsupportedPredicate):
            rewriter.rewrite({"$or": {"ssn": 1}}, patient_policy)
