"""Language registry.

Each supported language is described by a :class:`LanguageProfile`: the image
it runs in, how its source file is named, and the shell templates used to
compile and run it inside the container.  Templates are formatted with
``{filename}`` (e.g. ``Main.java``) and ``{stem}`` (e.g. ``Main``).

The registry is built once at startup and is read-only afterwards, so it can
be shared between concurrent requests without locking.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .errors import UnsupportedLanguageError

if TYPE_CHECKING:
    from .config import Config


class FileNaming(str, enum.Enum):
    FIXED = "fixed"
    # The toolchain requires the file to be named after the public type.
    PUBLIC_TYPE = "public_type"


@dataclass(frozen=True)
class LanguageProfile:
    id: str
    display_name: str
    image: str
    file_extension: str
    run_template: str
    compile_template: Optional[str] = None
    file_naming: FileNaming = FileNaming.FIXED
    fixed_stem: str = "code"
    default_timeout_ms: int = 30000

    @property
    def compiled(self) -> bool:
        return self.compile_template is not None

    def source_filename(self, code: str) -> str:
        """Return the file name the source must be saved under."""
        stem = self.fixed_stem
        if self.file_naming is FileNaming.PUBLIC_TYPE:
            stem = extract_public_type_name(code) or self.fixed_stem
        return f"{stem}{self.file_extension}"


_COMMENT_RE = re.compile(r"/\*.*?\*/|//[^\n]*", re.DOTALL)
_PUBLIC_TYPE_RE = re.compile(
    r"\bpublic\s+(?:(?:final|abstract|static|sealed|non-sealed|strictfp)\s+)*"
    r"(?:class|interface|enum|record)\s+([A-Za-z_$][\w$]*)"
)


def extract_public_type_name(source: str) -> Optional[str]:
    """Find the first public top-level type declared in ``source``.

    This is a textual scan, not a parse: comments are stripped and the first
    ``public class|interface|enum|record <Name>`` wins.  Returns ``None`` when
    nothing matches, including for malformed or empty input, in which case
    callers fall back to a fixed name and let the compiler report problems.
    """
    if not source:
        return None
    match = _PUBLIC_TYPE_RE.search(_COMMENT_RE.sub(" ", source))
    return match.group(1) if match else None


BUILTIN_PROFILES: List[LanguageProfile] = [
    LanguageProfile(
        id="java",
        display_name="Java",
        image="eclipse-temurin:17-jdk-alpine",
        file_extension=".java",
        compile_template="javac {filename}",
        run_template="java {stem}",
        file_naming=FileNaming.PUBLIC_TYPE,
        fixed_stem="Main",
    ),
    LanguageProfile(
        id="csharp",
        display_name="C#",
        image="mono:6.12",
        file_extension=".cs",
        compile_template="mcs -out:{stem}.exe {filename}",
        run_template="mono {stem}.exe",
    ),
    LanguageProfile(
        id="javascript",
        display_name="JavaScript",
        image="node:18-alpine",
        file_extension=".js",
        run_template="node {filename}",
    ),
    LanguageProfile(
        id="python",
        display_name="Python",
        image="python:3.11-alpine",
        file_extension=".py",
        run_template="python {filename}",
    ),
]

BUILTIN_LANGUAGE_IDS = tuple(profile.id for profile in BUILTIN_PROFILES)


class LanguageRegistry:
    """Case-insensitive lookup table of language profiles."""

    def __init__(self, profiles: Iterable[LanguageProfile]) -> None:
        self._profiles: Dict[str, LanguageProfile] = {}
        for profile in profiles:
            key = profile.id.lower()
            if key in self._profiles:
                raise ValueError(f"Duplicate language profile: {profile.id}")
            self._profiles[key] = profile

    @classmethod
    def default(cls) -> "LanguageRegistry":
        return cls(BUILTIN_PROFILES)

    @classmethod
    def from_config(cls, config: "Config") -> "LanguageRegistry":
        allowed = set(config.allowed_langs)
        profiles = []
        for profile in BUILTIN_PROFILES:
            if profile.id not in allowed:
                continue
            image = config.image_overrides.get(profile.id)
            if image:
                profile = replace(profile, image=image)
            profiles.append(profile)
        return cls(profiles)

    def resolve(self, language_id: str) -> LanguageProfile:
        profile = self._profiles.get((language_id or "").strip().lower())
        if profile is None:
            raise UnsupportedLanguageError(language_id, self.ids())
        return profile

    def list(self) -> List[LanguageProfile]:
        return list(self._profiles.values())

    def ids(self) -> List[str]:
        return list(self._profiles)

    def __contains__(self, language_id: object) -> bool:
        return isinstance(language_id, str) and language_id.strip().lower() in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
