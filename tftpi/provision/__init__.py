"""Image building, OS installation and post-install configuration."""

from .engine import ProvisioningEngine
from .image_builder import ImageBuildConfig, ImageBuilder
from .installer import InstallConfig, OSInstaller
from .post_installer import LocalRuntime, PostInstaller, RemoteRuntime

__all__ = [
    "ImageBuildConfig",
    "ImageBuilder",
    "InstallConfig",
    "LocalRuntime",
    "OSInstaller",
    "PostInstaller",
    "ProvisioningEngine",
    "RemoteRuntime",
]
