"""Configuration entries - grace period, late fee percentage and other settings."""
from fastapi import APIRouter, HTTPException

from app.api.deps import AdminOnly, Config, CurrentUser, is_admin
from app.models.configuration import ConfigEntry, ConfigValueUpdate
from app.services.config_provider import list_entries

router = APIRouter()


def _entry_out(entry: ConfigEntry) -> dict:
    return {
        "key": entry.key,
        "category": entry.category.value,
        "value": entry.value,
        "value_type": entry.value_type.value,
        "description": entry.description,
        "default_value": entry.default_value,
        "min_value": entry.min_value,
        "max_value": entry.max_value,
        "options": entry.options,
        "is_public": entry.is_public,
        "is_editable": entry.is_editable,
        "updated_at": entry.updated_at,
    }


@router.get("/")
async def get_configuration(user: CurrentUser):
    """Entries grouped by category; non-admins only see public entries."""
    grouped = await list_entries(public_only=not is_admin(user))
    return {category: [_entry_out(e) for e in entries] for category, entries in grouped.items()}


@router.get("/{key}")
async def get_configuration_entry(key: str, user: CurrentUser):
    entry = await ConfigEntry.find_one(ConfigEntry.key == key.lower(), ConfigEntry.is_active == True)
    if not entry or (not entry.is_public and not is_admin(user)):
        raise HTTPException(status_code=404, detail="Configuration not found")
    return _entry_out(entry)


@router.put("/{key}")
async def update_configuration_entry(key: str, data: ConfigValueUpdate, admin: AdminOnly, config: Config):
    entry = await config.set_value(key, data.value, str(admin.id))
    return _entry_out(entry)
