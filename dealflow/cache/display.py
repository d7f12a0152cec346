from __future__ import annotations

from collections.abc import Iterable

from dealflow.crm.schemas import (
    CompanyRead,
    ContactRead,
    DealView,
    LifecycleStageRead,
    PipelineConfig,
    StageDefinition,
)


NO_COMPANY = "No company"
NO_CONTACT = "No contact"
UNKNOWN_STAGE = "Unknown stage"


class DisplayResolver:
    """Lookup tables for the denormalized display fields of deal records."""

    def __init__(self) -> None:
        self._pipelines: dict[str, PipelineConfig] = {}
        self._stages: dict[str, StageDefinition] = {}
        self._contacts: dict[str, ContactRead] = {}
        self._companies: dict[str, CompanyRead] = {}
        self._lifecycle_names: dict[str, str] = {}

    def remember_pipelines(self, pipelines: Iterable[PipelineConfig]) -> None:
        for pipeline in pipelines:
            self._pipelines[pipeline.id] = pipeline
            for stage in pipeline.stages:
                self._stages[stage.id] = stage

    def remember_contacts(self, contacts: Iterable[ContactRead]) -> None:
        self._contacts.update({contact.id: contact for contact in contacts})

    def remember_companies(self, companies: Iterable[CompanyRead]) -> None:
        self._companies.update({company.id: company for company in companies})

    def remember_lifecycle_stages(self, stages: Iterable[LifecycleStageRead]) -> None:
        self._lifecycle_names.update({stage.id: stage.name for stage in stages})

    def pipeline(self, pipeline_id: str | None) -> PipelineConfig | None:
        if pipeline_id is None:
            return None
        return self._pipelines.get(pipeline_id)

    def stage(self, stage_id: str) -> StageDefinition | None:
        return self._stages.get(stage_id)

    def contact(self, contact_id: str | None) -> ContactRead | None:
        if contact_id is None:
            return None
        return self._contacts.get(contact_id)

    def lifecycle_name(self, marker: str) -> str:
        return self._lifecycle_names.get(marker, marker)

    def resolve(self, record: DealView) -> DealView:
        company = self._companies.get(record.company_id) if record.company_id else None
        contact = self.contact(record.contact_id)
        stage = self.stage(record.stage_id)
        return record.model_copy(
            update={
                "company_name": company.name if company else NO_COMPANY,
                "contact_name": contact.name if contact else NO_CONTACT,
                "contact_email": (contact.email or "") if contact else "",
                "stage_label": stage.label if stage else UNKNOWN_STAGE,
            }
        )
