"""
Saved Generation Configurations

Teachers can save the lesson constructor form (age group plus field values)
under a name and reload it later. Rows live in `generation_configs` and are
always scoped to their owner.
"""

import logging
from typing import Any, Dict, List, Optional

from teachspark.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TABLE = "generation_configs"


def config_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "ageGroupId": row["age_group_id"],
        "formValues": row.get("form_values") or {},
        "description": row.get("description"),
        "isTemplate": bool(row.get("is_template")),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


class GenerationConfigService:
    """Saved generation form presets on Supabase."""

    def __init__(self, supabase):
        self.supabase = supabase

    @staticmethod
    def validate_save_request(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check a save request and return the normalised fields.

        Raises:
            ValidationError: MISSING_NAME, MISSING_AGE_GROUP or MISSING_FORM_VALUES
        """
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Config name is required", code="MISSING_NAME")
        age_group_id = (data.get("ageGroupId") or "").strip()
        if not age_group_id:
            raise ValidationError("Age group ID is required", code="MISSING_AGE_GROUP")
        form_values = data.get("formValues")
        if not isinstance(form_values, dict) or not form_values:
            raise ValidationError("Form values are required", code="MISSING_FORM_VALUES")

        return {
            "name": name,
            "age_group_id": age_group_id,
            "form_values": form_values,
            "description": data.get("description") or f"Generation config for {age_group_id}",
            "is_template": bool(data.get("isTemplate", False)),
        }

    def save_config(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        row = {"user_id": user_id, **self.validate_save_request(data)}
        result = self.supabase.table(TABLE).insert(row).execute()
        saved = result.data[0]
        logger.info(f"💾 Saved generation config '{saved['name']}' for {saved['age_group_id']}")
        return config_to_dict(saved)

    def list_configs(self, user_id: str, age_group_id: Optional[str] = None,
                     templates_only: bool = False) -> List[Dict[str, Any]]:
        query = self.supabase.table(TABLE).select("*").eq("user_id", user_id)
        if age_group_id:
            query = query.eq("age_group_id", age_group_id)
        if templates_only:
            query = query.eq("is_template", True)
        result = query.order("created_at", desc=True).execute()
        return [config_to_dict(row) for row in result.data or []]

    def delete_config(self, user_id: str, config_id: str) -> None:
        if not config_id:
            raise ValidationError("Config ID is required", code="MISSING_ID")
        result = self.supabase.table(TABLE).delete().eq("id", config_id).eq("user_id", user_id).execute()
        if not result.data:
            raise NotFoundError("Config not found", code="CONFIG_NOT_FOUND")
        logger.info(f"🗑️ Deleted generation config {config_id}")
