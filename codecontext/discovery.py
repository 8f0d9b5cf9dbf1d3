"""
Discovery module for code context selection.

This module walks a source tree, applies include/exclude patterns and .gitignore,
hashes every file and classifies it against the stored file ledger.
"""

import os
import time
import logging
from typing import Dict, List, Optional, Tuple

import pathspec

from codecontext.errors import PathNotFoundError
from codecontext.models import ChangeSet, DiscoveredFile, FileRecord, SourceConfig

logger = logging.getLogger(__name__)

# Extensions never worth reading as text
BLACKLISTED_EXTENSIONS = {
    '.png', '.jpg', '.jpeg', '.gif', '.bmp', '.ico', '.svg', '.webp',  # Images
    '.jar', '.war', '.ear', '.class',  # Java compiled files
    '.pyc', '.pyo', '.pyd',  # Python compiled files
    '.so', '.dll', '.dylib', '.a', '.lib',  # Native libraries
    '.exe', '.bin', '.o', '.obj', '.wasm',  # Executables and object files
    '.zip', '.tar', '.gz', '.bz2', '.7z', '.rar',  # Archives
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',  # Documents
    '.mp3', '.mp4', '.avi', '.mov', '.flv', '.wav',  # Media files
    '.woff', '.woff2', '.ttf', '.eot',  # Fonts
}

ENCODINGS = ['utf-8', 'latin-1', 'cp1252', 'iso-8859-1']

MAX_FILE_BYTES = 1024 * 1024


def to_posix(path: str) -> str:
    return path.replace(os.sep, '/')


def load_gitignore(root: str) -> pathspec.PathSpec:
    """
    Load .gitignore patterns from a source root.

    Args:
        root: Directory that may contain a .gitignore

    Returns:
        PathSpec object with gitignore patterns (always ignoring .git/)
    """
    gitignore_path = os.path.join(root, '.gitignore')
    patterns = ['.git/']

    if os.path.exists(gitignore_path):
        try:
            with open(gitignore_path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#'):
                        patterns.append(line)
        except OSError as e:
            logger.warning("Error reading %s: %s", gitignore_path, e)

    return pathspec.PathSpec.from_lines('gitwildmatch', patterns)


def decode_content(data: bytes, path: str) -> Optional[str]:
    """Decode file bytes, trying several encodings in order of likelihood."""
    for encoding in ENCODINGS:
        try:
            content = data.decode(encoding)
        except UnicodeDecodeError:
            continue
        if encoding != 'utf-8':
            logger.debug("Read %s using %s encoding", path, encoding)
        return content
    return None


def discover_files(source: SourceConfig, base_dir: str) -> Tuple[List[DiscoveredFile], List[str]]:
    """
    Walk a source and read every file selected by its patterns.

    Args:
        source: The source to walk
        base_dir: Project directory the source path is relative to

    Returns:
        Tuple of (discovered files sorted by path, skipped project-relative paths)

    Raises:
        PathNotFoundError: if the source root does not exist
    """
    root = os.path.normpath(os.path.join(base_dir, source.path))
    if not os.path.isdir(root):
        raise PathNotFoundError(root)

    start_time = time.time()
    include_spec = pathspec.PathSpec.from_lines('gitwildmatch', source.include)
    exclude_spec = pathspec.PathSpec.from_lines('gitwildmatch', source.exclude)
    gitignore_spec = load_gitignore(root)

    files = []
    skipped = []

    for current, dirs, filenames in os.walk(root):
        rel_root = os.path.relpath(current, root)
        rel_root = '' if rel_root == '.' else to_posix(rel_root)

        # Prune in place so os.walk never descends into ignored folders
        for d in list(dirs):
            rel_dir = f"{rel_root}/{d}" if rel_root else d
            if d == '.git' or gitignore_spec.match_file(rel_dir + '/') or exclude_spec.match_file(rel_dir + '/'):
                dirs.remove(d)
        dirs.sort()

        for filename in sorted(filenames):
            rel_path = f"{rel_root}/{filename}" if rel_root else filename

            if gitignore_spec.match_file(rel_path):
                continue
            if not include_spec.match_file(rel_path) or exclude_spec.match_file(rel_path):
                continue

            _, ext = os.path.splitext(filename.lower())
            if ext in BLACKLISTED_EXTENSIONS:
                continue

            abs_path = os.path.join(current, filename)
            project_path = to_posix(os.path.relpath(abs_path, base_dir))

            try:
                if os.path.getsize(abs_path) > MAX_FILE_BYTES:
                    logger.warning("Skipping %s: larger than %d bytes", project_path, MAX_FILE_BYTES)
                    skipped.append(project_path)
                    continue
                with open(abs_path, 'rb') as f:
                    data = f.read()
            except OSError as e:
                logger.warning("Skipping unreadable file %s: %s", project_path, e)
                skipped.append(project_path)
                continue

            if b'\x00' in data[:8000]:
                logger.debug("Skipping binary file %s", project_path)
                continue

            content = decode_content(data, project_path)
            if content is None:
                logger.warning("Skipping %s: unable to decode", project_path)
                skipped.append(project_path)
                continue

            files.append(DiscoveredFile(
                source_id=source.id,
                relative_path=project_path,
                content=content,
                content_hash=DiscoveredFile.hash_bytes(data),
                absolute_path=abs_path,
            ))

    files.sort(key=lambda f: f.relative_path)
    logger.info("Discovered %d files in source %s (%d skipped) in %.2f seconds",
                len(files), source.id, len(skipped), time.time() - start_time)
    return files, skipped


def classify_changes(files: List[DiscoveredFile], stored: Dict[str, FileRecord],
                     force: bool = False, skipped: Optional[List[str]] = None) -> ChangeSet:
    """
    Split discovered files into new, changed, unchanged and removed sets.

    Args:
        files: Files found by discover_files
        stored: Stored ledger rows keyed by file path
        force: Treat every discovered file as changed
        skipped: Paths that exist but could not be read; they keep their stored state

    Returns:
        A ChangeSet whose four sets are disjoint
    """
    changes = ChangeSet(skipped=list(skipped or []))
    seen = set(changes.skipped)

    for file in files:
        seen.add(file.relative_path)
        record = stored.get(file.relative_path)
        if record is None:
            changes.new.append(file)
        elif force or record.content_hash != file.content_hash:
            changes.changed.append(file)
        else:
            changes.unchanged.append(file)

    changes.removed = sorted(path for path in stored if path not in seen)
    return changes
