"""
Build system components for crossbin.

This module provides the build pipeline implementation including:
- Static link plans and cross build environments
- Toolchain invocation
- Artifact verification and staging
- Build orchestration
"""

from .environment import BuildEnvironment, CrossEnvironmentBuilder, UnsupportedLinkerError
from .executor import Artifact, BuildExecutor, BuildRequest, ToolNotFoundError
from .linkage import (
    ConflictingLinkagePlanError,
    LinkageDirective,
    LinkMode,
    StaticLinkageError,
    StaticLinkPlan,
)
from .orchestrator import BuildOrchestrator, BuildResult
from .stager import OutputStager
from .verifier import (
    ArchitectureMismatchError,
    ArtifactMetadata,
    ArtifactVerifier,
    DynamicLinkageError,
    InvalidArtifactError,
)

__all__ = [
    'BuildEnvironment',
    'CrossEnvironmentBuilder',
    'UnsupportedLinkerError',
    'Artifact',
    'BuildExecutor',
    'BuildRequest',
    'ToolNotFoundError',
    'ConflictingLinkagePlanError',
    'LinkageDirective',
    'LinkMode',
    'StaticLinkageError',
    'StaticLinkPlan',
    'BuildOrchestrator',
    'BuildResult',
    'OutputStager',
    'ArchitectureMismatchError',
    'ArtifactMetadata',
    'ArtifactVerifier',
    'DynamicLinkageError',
    'InvalidArtifactError',
]
