"""Pydantic schemas for parsing App Store Connect API responses.

Responses are JSON:API documents. Each endpoint decodes into a resource type
tagged by its ``type`` member; unknown members are ignored so that new API
fields never break a sync.
See: https://developer.apple.com/documentation/appstoreconnectapi
"""

from datetime import UTC, datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .submission import CrashSubmissionCreate, FeedbackSubmissionCreate


def _as_utc(value: datetime | None) -> datetime | None:
    """Normalize an API timestamp to naive UTC, as stored."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class AscModel(BaseModel):
    """Base for API payload models: camelCase members, unknown members ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ------------------------------------------------------------------------------
# JSON:API envelope
# ------------------------------------------------------------------------------
class ResourceIdentifier(AscModel):
    """Linkage to another resource."""

    type: str
    id: str


class Relationship(AscModel):
    """A to-one relationship; ``data`` is only present when requested."""

    data: ResourceIdentifier | None = None


class PagedLinks(AscModel):
    """Document-level links; ``next`` is absent on the last page."""

    self_: str | None = Field(default=None, alias="self")
    next: str | None = None


ResourceT = TypeVar("ResourceT", bound=AscModel)


class Page(AscModel, Generic[ResourceT]):
    """One page of a collection response."""

    data: list[ResourceT]
    links: PagedLinks = Field(default_factory=PagedLinks)


# ------------------------------------------------------------------------------
# Apps
# ------------------------------------------------------------------------------
class AppAttributes(AscModel):
    """Attributes of an ``apps`` resource."""

    bundle_id: str | None = None
    name: str | None = None


class AppResource(AscModel):
    """``apps`` resource.

    Maps to: GET /v1/apps
    """

    type: Literal["apps"]
    id: str
    attributes: AppAttributes = Field(default_factory=AppAttributes)


# ------------------------------------------------------------------------------
# Beta feedback submissions
# ------------------------------------------------------------------------------
class SubmissionAttributes(AscModel):
    """Attributes shared by crash and screenshot submissions."""

    created_date: datetime | None = None
    comment: str | None = None
    email: str | None = None
    device_model: str | None = None
    os_version: str | None = None
    locale: str | None = None
    time_zone: str | None = None
    connection_type: str | None = None
    battery_percentage: int | None = None
    app_platform: str | None = None
    device_platform: str | None = None
    device_family: str | None = None
    build_bundle_id: str | None = None


class SubmissionRelationships(AscModel):
    """Relationships shared by crash and screenshot submissions."""

    build: Relationship | None = None
    tester: Relationship | None = None


class CrashSubmissionAttributes(SubmissionAttributes):
    """Attributes of a ``betaFeedbackCrashSubmissions`` resource."""

    architecture: str | None = None
    app_uptime_in_milliseconds: int | None = None
    disk_bytes_available: int | None = None
    disk_bytes_total: int | None = None


class ScreenshotImage(AscModel):
    """One image attached to a screenshot submission."""

    url: str
    width: int | None = None
    height: int | None = None
    expiration_date: datetime | None = None


class ScreenshotSubmissionAttributes(SubmissionAttributes):
    """Attributes of a ``betaFeedbackScreenshotSubmissions`` resource."""

    screenshots: list[ScreenshotImage] = Field(default_factory=list)


class _SubmissionResource(AscModel):
    id: str
    relationships: SubmissionRelationships = Field(default_factory=SubmissionRelationships)

    @property
    def build_id(self) -> str | None:
        """Remote id of the build the submission was made from."""
        build = self.relationships.build
        if build is None or build.data is None:
            return None
        return build.data.id


class CrashSubmissionResource(_SubmissionResource):
    """``betaFeedbackCrashSubmissions`` resource.

    Maps to: GET /v1/apps/{id}/betaFeedbackCrashSubmissions
    """

    type: Literal["betaFeedbackCrashSubmissions"]
    attributes: CrashSubmissionAttributes = Field(default_factory=CrashSubmissionAttributes)

    def to_submission_create(self) -> CrashSubmissionCreate:
        """
        Factory method to convert to CrashSubmissionCreate schema.

        Returns:
            CrashSubmissionCreate with the fields stored on first sight
        """
        a = self.attributes
        return CrashSubmissionCreate(
            remote_id=self.id,
            created_date=_as_utc(a.created_date),
            device_model=a.device_model,
            os_version=a.os_version,
            app_platform=a.app_platform,
            device_family=a.device_family,
            locale=a.locale,
            connection_type=a.connection_type,
            battery_pct=a.battery_percentage,
            tester_email=a.email,
            tester_comment=a.comment,
            build_bundle_id=a.build_bundle_id,
            build_id=self.build_id,
            architecture=a.architecture,
            app_uptime_ms=a.app_uptime_in_milliseconds,
        )


class ScreenshotSubmissionResource(_SubmissionResource):
    """``betaFeedbackScreenshotSubmissions`` resource.

    Maps to: GET /v1/apps/{id}/betaFeedbackScreenshotSubmissions
    """

    type: Literal["betaFeedbackScreenshotSubmissions"]
    attributes: ScreenshotSubmissionAttributes = Field(
        default_factory=ScreenshotSubmissionAttributes
    )

    @property
    def screenshot_url(self) -> str | None:
        """URL of the first screenshot, if any."""
        if not self.attributes.screenshots:
            return None
        return self.attributes.screenshots[0].url

    def to_submission_create(self) -> FeedbackSubmissionCreate:
        """
        Factory method to convert to FeedbackSubmissionCreate schema.

        Returns:
            FeedbackSubmissionCreate with the fields stored on first sight
        """
        a = self.attributes
        return FeedbackSubmissionCreate(
            remote_id=self.id,
            created_date=_as_utc(a.created_date),
            device_model=a.device_model,
            os_version=a.os_version,
            app_platform=a.app_platform,
            device_family=a.device_family,
            locale=a.locale,
            connection_type=a.connection_type,
            battery_pct=a.battery_percentage,
            tester_email=a.email,
            tester_comment=a.comment,
            build_bundle_id=a.build_bundle_id,
            build_id=self.build_id,
            attachment_url=self.screenshot_url,
        )


# ------------------------------------------------------------------------------
# Crash log
# ------------------------------------------------------------------------------
class CrashLogAttributes(AscModel):
    """Attributes of a ``betaCrashLogs`` resource."""

    log_text: str | None = None


class CrashLogResource(AscModel):
    """``betaCrashLogs`` resource."""

    type: Literal["betaCrashLogs"]
    id: str
    attributes: CrashLogAttributes = Field(default_factory=CrashLogAttributes)


class CrashLogDocument(AscModel):
    """Single-resource document.

    Maps to: GET /v1/betaFeedbackCrashSubmissions/{id}/crashLog
    """

    data: CrashLogResource
