"""Places cached artifacts into a project's ``rmm_modules`` directory."""

import logging
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Union

from ..errors import RmmError, Stage
from ..utils.fs import replace_directory

logger = logging.getLogger(__name__)

MODULES_DIR = "rmm_modules"
MODULE_PROP = "module.prop"


def module_dir(project_root: Union[str, Path], dependency_id: str) -> Path:
    return Path(project_root) / MODULES_DIR / dependency_id


def _check_members(archive: zipfile.ZipFile, artifact: Path) -> None:
    for name in archive.namelist():
        member = PurePosixPath(name)
        if member.is_absolute() or ".." in member.parts:
            raise RmmError(f"Archive {artifact.name} contains unsafe path '{name}'", stage=Stage.INSTALL)


def install_artifact(project_root: Union[str, Path], dependency_id: str, artifact: Path) -> str:
    """Install ``artifact`` as ``rmm_modules/<id>``, replacing any previous copy.

    Zip archives are extracted; any other file is copied in as-is.

    Returns:
        str: The install location relative to the project root (POSIX form).
    """
    project_root = Path(project_root)
    target = module_dir(project_root, dependency_id)
    target.parent.mkdir(parents=True, exist_ok=True)
    staged = Path(tempfile.mkdtemp(prefix=f".{dependency_id}.", dir=str(target.parent)))
    try:
        if zipfile.is_zipfile(artifact):
            with zipfile.ZipFile(artifact) as archive:
                _check_members(archive, artifact)
                archive.extractall(staged)
        else:
            shutil.copyfile(artifact, staged / artifact.name)
        replace_directory(staged, target)
    except (OSError, zipfile.BadZipFile) as e:
        raise RmmError(f"Cannot install {artifact.name}: {e}", dependency=dependency_id, stage=Stage.INSTALL)
    finally:
        if staged.exists():
            shutil.rmtree(staged, ignore_errors=True)
    logger.debug("Installed %s into %s", dependency_id, target)
    return target.relative_to(project_root).as_posix()


def uninstall(project_root: Union[str, Path], installed_path: str) -> bool:
    """Delete an installed module, refusing paths outside the project."""
    root = Path(project_root).resolve()
    target = (root / installed_path).resolve()
    if root not in target.parents:
        raise RmmError(f"Refusing to delete {target}: outside the project", stage=Stage.INSTALL)
    if not target.exists():
        return False
    if target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True


def read_module_prop(path: Path) -> Dict[str, str]:
    """Parse ``key=value`` lines; blank lines and ``#`` comments are skipped."""
    props: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        props[key.strip()] = value.strip()
    return props


def installed_module_version(project_root: Union[str, Path], installed_path: Optional[str]) -> Optional[str]:
    """The ``version`` from an installed module's ``module.prop``, if there is one."""
    if not installed_path:
        return None
    root = Path(project_root) / installed_path
    prop = root / MODULE_PROP
    if not prop.is_file():
        # Archives that wrap everything in one top-level folder
        subdirs = [p for p in root.iterdir() if p.is_dir()] if root.is_dir() else []
        if len(subdirs) != 1 or not (subdirs[0] / MODULE_PROP).is_file():
            return None
        prop = subdirs[0] / MODULE_PROP
    return read_module_prop(prop).get("version") or None
