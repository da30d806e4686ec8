"""README generation from package documentation.

Runs on its own (``lockstep readme``), outside the release pipeline.

Docs come from the package source: the ``//!`` crate docs of
``src/lib.rs`` / ``src/main.rs`` for Cargo packages, or the module
docstring of the import package for Python packages. They are rendered
through the nearest ``README.tpl`` (searched from the package directory up
to the workspace root) with these placeholders:

    {{name}}     package name ({{crate}} works too)
    {{version}}  current version
    {{readme}}   the extracted docs

Relative doc links are then pointed at the published documentation.
"""

from __future__ import annotations

import ast
import fnmatch
import re
from enum import Enum
from pathlib import Path

from .context import ReleaseContext
from .errors import WorkspaceError
from .manifests import ManifestStore
from .models import Flavour, Package
from .toml import get_table, load_toml, save_toml

DEFAULT_DOC_URI = "https://docs.rs/"
TEMPLATE_NAME = "README.tpl"
README_NAME = "README.md"

# [text](url "optional title")
RELATIVE_LINK = re.compile(r'\[(?P<text>[^\]]+)\]\((?P<url>[^ )]+)(?: "(?P<title>[^"]+)")?\)')


class ReadmeMode(str, Enum):
    IF_MISSING = "if-missing"
    OVERWRITE = "overwrite"
    APPEND = "append"


class ReadmeStatus(str, Enum):
    SKIPPED = "skipped"
    MISSING = "missing"
    UPDATE_NEEDED = "update-needed"
    UP_TO_DATE = "up-to-date"
    WRITTEN = "written"


def rust_docs(pkg_dir: Path) -> str | None:
    """Collect the leading ``//!`` block of src/lib.rs, else src/main.rs."""
    for candidate in ("src/lib.rs", "src/main.rs"):
        source = pkg_dir / candidate
        if source.exists():
            break
    else:
        return None

    lines: list[str] = []
    for line in source.read_text().splitlines():
        stripped = line.strip()
        if stripped.startswith("//!"):
            text = stripped[3:]
            lines.append(text[1:] if text.startswith(" ") else text)
        elif lines and stripped and not stripped.startswith("#!["):
            break
    return "\n".join(lines).strip() or None


def python_docs(pkg_dir: Path, name: str) -> str | None:
    """Return the module docstring of the package's import package."""
    module = name.replace("-", "_")
    for candidate in (
        f"src/{module}/__init__.py",
        f"{module}/__init__.py",
        f"src/{module}.py",
        f"{module}.py",
    ):
        source = pkg_dir / candidate
        if source.exists():
            try:
                tree = ast.parse(source.read_text())
            except SyntaxError as exc:
                raise WorkspaceError(f"Cannot parse {source}: {exc}") from exc
            return ast.get_docstring(tree)
    return None


def find_template(root: Path, pkg_dir: Path) -> Path | None:
    """Find the nearest README.tpl from ``pkg_dir`` up to ``root``."""
    root = root.resolve()
    current = pkg_dir.resolve()
    while True:
        template = current / TEMPLATE_NAME
        if template.exists():
            return template
        if current == root or root not in current.parents:
            return None
        current = current.parent


def fix_doc_links(name: str, text: str, doc_uri: str | None, flavour: Flavour) -> str:
    """Point relative doc links at the published documentation.

    For Cargo packages (docs.rs layout):
    - ``../other_crate/index.html`` → ``{doc_uri}other-crate``
    - ``./struct.Foo.html`` → ``{doc_uri}{name}/latest/{name_}/struct.Foo.html``

    For Python packages both forms are resolved against ``doc_uri``
    (default: the package's Read the Docs site).
    """
    if flavour is Flavour.CARGO:
        base = doc_uri or DEFAULT_DOC_URI
    else:
        base = doc_uri or f"https://{name}.readthedocs.io/en/latest/"
    if not base.endswith("/"):
        base += "/"

    def _replace(match: re.Match[str]) -> str:
        label, url = match.group("text"), match.group("url")
        if flavour is Flavour.CARGO:
            if url.startswith("../"):
                return f"[{label}]({base}{url.replace('_', '-').replace('/index.html', '')[3:]})"
            if url.startswith("./"):
                return f"[{label}]({base}{name}/latest/{name.replace('-', '_')}/{url[2:]})"
        elif url.startswith("../"):
            return f"[{label}]({base}{url[3:]})"
        elif url.startswith("./"):
            return f"[{label}]({base}{url[2:]})"
        return match.group(0)

    return RELATIVE_LINK.sub(_replace, text)


def _documentation_url(manifest: Path, flavour: Flavour) -> str | None:
    doc = load_toml(manifest)
    if flavour is Flavour.CARGO:
        url = get_table(doc, ("package", "documentation"))
    else:
        urls = get_table(doc, ("project", "urls")) or {}
        url = next((v for k, v in urls.items() if str(k).lower() == "documentation"), None)
    return str(url) if url is not None else None


def render_readme(store: ManifestStore, package: Package) -> str | None:
    """Render a package's README, or None when it has no docs to render."""
    pkg_dir = store.root / package.path
    if store.flavour is Flavour.CARGO:
        docs = rust_docs(pkg_dir)
    else:
        docs = python_docs(pkg_dir, package.name)
    if docs is None:
        return None

    template = find_template(store.root, pkg_dir)
    if template is None:
        text = f"# {package.name}\n\n{docs}\n"
    else:
        text = (
            template.read_text()
            .replace("{{name}}", package.name)
            .replace("{{crate}}", package.name)
            .replace("{{version}}", package.version)
            .replace("{{readme}}", docs)
        )
    doc_uri = _documentation_url(pkg_dir / store.manifest_name, store.flavour)
    return fix_doc_links(package.name, text, doc_uri, store.flavour)


def check_readme(store: ManifestStore, package: Package) -> ReadmeStatus:
    """Compare a package's README.md with what would be generated."""
    rendered = render_readme(store, package)
    if rendered is None:
        return ReadmeStatus.SKIPPED
    readme = store.root / package.path / README_NAME
    if not readme.exists():
        return ReadmeStatus.MISSING
    if readme.read_text() != rendered:
        return ReadmeStatus.UPDATE_NEEDED
    return ReadmeStatus.UP_TO_DATE


def _set_readme_field(manifest: Path, flavour: Flavour) -> None:
    """Declare README.md in the manifest unless a readme is already set."""
    doc = load_toml(manifest)
    table = doc.get("package") if flavour is Flavour.CARGO else doc.get("project")
    if table is None or "readme" in table or "readme" in table.get("dynamic", []):
        return
    table["readme"] = README_NAME
    save_toml(manifest, doc)


def write_readme(store: ManifestStore, package: Package, mode: ReadmeMode) -> ReadmeStatus:
    """Generate a package's README.md according to ``mode``.

    Returns:
        WRITTEN when the file was written, SKIPPED when there are no docs,
        UP_TO_DATE when ``if-missing`` found an existing README. The
        manifest's readme field is set in both the WRITTEN and UP_TO_DATE
        cases.
    """
    pkg_dir = store.root / package.path
    readme = pkg_dir / README_NAME
    existing = readme.read_text() if readme.exists() else None
    if mode is ReadmeMode.IF_MISSING and existing is not None:
        _set_readme_field(pkg_dir / store.manifest_name, store.flavour)
        return ReadmeStatus.UP_TO_DATE

    rendered = render_readme(store, package)
    if rendered is None:
        return ReadmeStatus.SKIPPED
    if mode is ReadmeMode.APPEND and existing is not None:
        rendered = f"{existing}\n{rendered}"
    readme.write_text(rendered)
    _set_readme_field(pkg_dir / store.manifest_name, store.flavour)
    return ReadmeStatus.WRITTEN


def run_readme(
    store: ManifestStore,
    ctx: ReleaseContext,
    *,
    patterns: list[str] | None = None,
    mode: ReadmeMode = ReadmeMode.IF_MISSING,
    check: bool = False,
) -> dict[str, ReadmeStatus]:
    """Generate (or check) READMEs for the workspace's packages.

    Args:
        store: Manifest store of the workspace.
        ctx: Run context.
        patterns: Glob patterns selecting packages; all when empty.
        mode: How to treat existing READMEs when generating.
        check: Only compare, never write.

    Returns:
        Map of package name → status, in name order.
    """
    console = ctx.console
    console.step("Checking READMEs" if check else "Generating READMEs")
    packages = sorted(store.load_workspace(), key=lambda p: p.name)
    if patterns:
        packages = [p for p in packages if any(fnmatch.fnmatchcase(p.name, pat) for pat in patterns)]

    results: dict[str, ReadmeStatus] = {}
    for package in packages:
        if check:
            status = check_readme(store, package)
        else:
            status = write_readme(store, package, mode)
        results[package.name] = status
        console.info(f"  {package.name}: {status.value}")
    return results
