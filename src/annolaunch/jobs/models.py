"""Request and result models for the job lifecycle."""

import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from annolaunch.errors import SubmissionValidationError

IMAGE_EXTENSIONS = ("tif", "tiff", "TIFF", "hdf5", "h5", "raw", "b")
ANNOTATION_EXTENSIONS = ("pkl",)
CLASS_MODEL_EXTENSIONS = ("model", "pkl")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
# Output directory lands on #SBATCH lines, which are not shell-quoted.
_OUTPUT_DIR_RE = re.compile(r"^/[A-Za-z0-9_.+@%=,:/-]*/$")


def _check_path(value: str, extensions: tuple[str, ...], what: str) -> str:
    if len(value) < 2:
        raise ValueError(f"Must be a valid {what} name!")
    if _CONTROL_CHARS.search(value):
        raise ValueError(f"{what.capitalize()} path contains control characters")
    if not value.startswith("/"):
        raise ValueError(f"{what.capitalize()} path must be absolute")
    if not any(value.endswith(f".{ext}") for ext in extensions):
        raise ValueError(f"Must be a valid {what} extension!")
    return value


class SubmissionParams(BaseModel):
    """Parameters of one Annotat3D instance submission."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    partition: str = Field(pattern=r"^[A-Za-z0-9_.-]+$")
    gpus: int = Field(ge=0)
    cpus: int = Field(ge=1)
    image_path: str = Field(alias="imagePath")
    label_path: str | None = Field(default=None, alias="labelPath")
    superpixel_path: str | None = Field(default=None, alias="superpixelPath")
    annotation_path: str | None = Field(default=None, alias="annotationPath")
    class_model_path: str | None = Field(default=None, alias="classModelPath")
    output_dir: str = Field(alias="outputDir")

    @field_validator("image_path", "label_path", "superpixel_path")
    @classmethod
    def _image_path(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_path(value, IMAGE_EXTENSIONS, "image")

    @field_validator("annotation_path")
    @classmethod
    def _annotation_path(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_path(value, ANNOTATION_EXTENSIONS, "annotation")

    @field_validator("class_model_path")
    @classmethod
    def _class_model_path(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_path(value, CLASS_MODEL_EXTENSIONS, "classifier model")

    @field_validator("output_dir")
    @classmethod
    def _output_dir(cls, value: str) -> str:
        if len(value) < 2 or not value.endswith("/"):
            raise ValueError("Must be a valid workspace directory!")
        if not _OUTPUT_DIR_RE.match(value) or "/../" in value or value.endswith("/../"):
            raise ValueError("Workspace directory contains unsupported characters")
        return value

    @classmethod
    def parse(cls, data: dict) -> "SubmissionParams":
        """Validate raw request data, raising SubmissionValidationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
            raise SubmissionValidationError(f"Invalid submission: {summary}", errors) from e

    def annotat3d_args(self) -> list[str]:
        """Command-line arguments passed to the Annotat3D server."""
        args = ["--image", self.image_path]
        optional = (
            ("--label", self.label_path),
            ("--superpixel", self.superpixel_path),
            ("--annotation", self.annotation_path),
            ("--classifier", self.class_model_path),
        )
        for flag, value in optional:
            if value:
                args.extend([flag, value])
        args.extend(["--workspace", self.output_dir])
        return args


@dataclass
class SubmissionLimits:
    """Configured bounds on requested resources."""

    gpu_options: list[int]
    max_cpus: int

    def check(self, params: SubmissionParams) -> None:
        errors = []
        if params.gpus not in self.gpu_options:
            options = ", ".join(str(g) for g in self.gpu_options)
            errors.append({"field": "gpus", "message": f"GPU count must be one of {options}"})
        if params.cpus > self.max_cpus:
            errors.append({"field": "cpus", "message": f"At most {self.max_cpus} CPUs may be requested"})
        if errors:
            summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
            raise SubmissionValidationError(f"Invalid submission: {summary}", errors)


@dataclass
class SubmitResult:
    job_id: str

    def to_dict(self) -> dict[str, str]:
        return {"jobId": self.job_id}


@dataclass
class CancelResult:
    """Outcome of a cancellation request.

    ``cancelled`` is False when the job was already terminal; ``message``
    then carries the scheduler's explanation.
    """

    cancelled: bool
    message: str = ""

    def to_dict(self) -> dict[str, object]:
        return {"cancelled": self.cancelled, "message": self.message}
