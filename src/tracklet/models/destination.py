"""
Device-mode destination descriptors returned by the collection endpoint.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class InternalPluginOptions(BaseModel):
    """Plugin shipped with the SDK, looked up by name."""
    type: Literal["internal-plugin"]
    name: str


class AnalyticsPluginOptions(BaseModel):
    """Plugin loaded at runtime from packageCdn, exported as moduleVarName."""
    type: Literal["analytics-plugin"]
    package_cdn: str = Field(alias="packageCdn")
    module_var_name: str = Field(alias="moduleVarName")

    model_config = ConfigDict(populate_by_name=True)


DeviceOptions = Annotated[Union[InternalPluginOptions, AnalyticsPluginOptions], Field(discriminator="type")]


class DestinationDescriptor(BaseModel):
    id: str
    destination_type: Optional[str] = Field(default=None, alias="destinationType")
    credentials: Optional[dict[str, Any]] = None
    options: Optional[dict[str, Any]] = None
    new_events: Optional[list[Any]] = Field(default=None, alias="newEvents")
    device_options: DeviceOptions = Field(alias="deviceOptions")

    model_config = ConfigDict(populate_by_name=True)

    def merged_config(self) -> dict[str, Any]:
        return {**(self.credentials or {}), **(self.options or {})}
