from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Reusable bool coercion: "true" / "1" / "yes" → True
# ---------------------------------------------------------------------------

def _coerce_bool(v: object) -> object:
    if isinstance(v, str):
        return v.lower() in ("true", "1", "yes")
    return v


CoercedBool = Annotated[bool, BeforeValidator(_coerce_bool)]


# ---------------------------------------------------------------------------
# Bases for config blocks: unknown keys are a validation error
# ---------------------------------------------------------------------------

class _SectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _ResolverConfig(_SectionConfig):
    enabled: CoercedBool = True


# ---------------------------------------------------------------------------
# Host + plugin
# ---------------------------------------------------------------------------

class NapCatConfig(_SectionConfig):
    instance_id:   str                      = "napcat"
    ws_url:        str                      = "ws://127.0.0.1:3001"
    ws_token:      str                      = ""
    image_mode:    Literal["url", "base64"] = "url"
    max_file_size: int                      = 10 * 1024 * 1024

    @model_validator(mode="after")
    def _check_scheme(self) -> NapCatConfig:
        if not self.ws_url.startswith(("ws://", "wss://")):
            raise ValueError("ws_url must start with ws:// or wss://")
        return self


class PluginConfig(_SectionConfig):
    cache_window_seconds:   int                                = Field(60, gt=0)
    message_window_seconds: int                                = Field(15, gt=0)
    max_targets:            int                                = Field(5, ge=1)
    share_card_policy:      Literal["live", "fallback", "share"] = "fallback"
    # Ordered candidates for downloaded media; first writable wins.
    # Empty means <data>/media then the system temp dir.
    media_dirs:             list[str]                          = Field(default_factory=list)
    skip_self_messages:     CoercedBool                        = True


# ---------------------------------------------------------------------------
# Top-level application config. Resolver sections ("bili", "xhs", "douyin")
# are validated separately through resolvers.registry.
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    napcat: NapCatConfig = Field(default_factory=NapCatConfig)
    plugin: PluginConfig = Field(default_factory=PluginConfig)
