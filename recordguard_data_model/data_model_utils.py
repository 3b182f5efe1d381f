from typing import Any, Dict, Optional

from recordguard_data_model.batch_operation import BatchOperation
from recordguard_data_model.conflict_descriptor import ConflictDescriptor
from recordguard_data_model.data_models import (
    BatchOperationModel, ConflictDescriptorModel, VersionedRecordModel
)
from recordguard_data_model.versioned_record import VersionedRecord


class DataModelUtils:
    @staticmethod
    def convert_to_versioned_record(model: VersionedRecordModel) -> VersionedRecord:
        """Convert API model to VersionedRecord, validating bookkeeping fields"""
        return VersionedRecord(
            id=model.id,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
            fields=dict(model.fields)
        )

    @staticmethod
    def convert_from_versioned_record(record: VersionedRecord) -> VersionedRecordModel:
        return VersionedRecordModel(
            id=record.id,
            version=record.version,
            created_at=record.created_at,
            updated_at=record.updated_at,
            fields=dict(record.fields)
        )

    @staticmethod
    def convert_from_conflict_descriptor(descriptor: ConflictDescriptor) -> ConflictDescriptorModel:
        remote: Optional[VersionedRecordModel] = None
        if descriptor.remote_data is not None:
            remote = DataModelUtils.convert_from_versioned_record(descriptor.remote_data)
        return ConflictDescriptorModel(
            conflict_id=descriptor.conflict_id,
            table=descriptor.table,
            record_id=descriptor.record_id,
            local_data=dict(descriptor.local_data),
            remote_data=remote,
            timestamp=descriptor.timestamp,
            resolved=descriptor.resolved
        )

    @staticmethod
    def convert_to_conflict_descriptor(model: ConflictDescriptorModel) -> ConflictDescriptor:
        remote: Optional[VersionedRecord] = None
        if model.remote_data is not None:
            remote = DataModelUtils.convert_to_versioned_record(model.remote_data)
        return ConflictDescriptor(
            table=model.table,
            record_id=model.record_id,
            local_data=dict(model.local_data),
            remote_data=remote,
            timestamp=model.timestamp,
            resolved=model.resolved,
            conflict_id=model.conflict_id
        )

    @staticmethod
    def convert_to_batch_operation(model: BatchOperationModel) -> BatchOperation:
        return BatchOperation(
            table=model.table,
            record_id=model.record_id,
            updates=dict(model.updates),
            expected_version=model.expected_version
        )

    @staticmethod
    def convert_from_batch_operation(operation: BatchOperation) -> BatchOperationModel:
        return BatchOperationModel(
            table=operation.table,
            record_id=operation.record_id,
            updates=dict(operation.updates),
            expected_version=operation.expected_version
        )

    @staticmethod
    def model_to_json_dict(model) -> Dict[str, Any]:
        """JSON-ready dict of a pydantic model (datetimes become ISO strings)"""
        return model.model_dump(mode="json")
