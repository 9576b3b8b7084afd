"""Project scaffolds rendered with jinja2.

A scaffold is a mapping of relative file path to file body; both are jinja2
templates rendered against the caller's variables.  Rendered paths are
resolved against the target directory with the sandbox resolver, so a
variable cannot smuggle a ``..`` segment out of it.
"""
from __future__ import annotations

import os
import re
from typing import Dict, List, Mapping, Optional

from jinja2 import DictLoader, Environment, StrictUndefined, TemplateError

from sandbox_agent.domain.errors import NotFound, SandboxAgentError
from sandbox_agent.execution import paths

SCAFFOLDS: Dict[str, Dict[str, str]] = {
    "python-package": {
        "pyproject.toml": (
            "[build-system]\n"
            'requires = ["setuptools>=68"]\n'
            'build-backend = "setuptools.build_meta"\n'
            "\n"
            "[project]\n"
            'name = "{{ project_name }}"\n'
            'version = "{{ version }}"\n'
            'description = "{{ description }}"\n'
            'requires-python = ">=3.10"\n'
        ),
        "README.md": "# {{ project_name }}\n\n{{ description }}\n",
        "src/{{ package_name }}/__init__.py": '__version__ = "{{ version }}"\n',
        "tests/test_{{ package_name }}.py": (
            "import {{ package_name }}\n"
            "\n"
            "\n"
            "def test_version():\n"
            '    assert {{ package_name }}.__version__ == "{{ version }}"\n'
        ),
    },
    "express-api": {
        "package.json": (
            "{\n"
            '  "name": "{{ package_name }}",\n'
            '  "version": "{{ version }}",\n'
            '  "description": "{{ description }}",\n'
            '  "main": "src/index.js",\n'
            '  "scripts": { "start": "node src/index.js" },\n'
            '  "dependencies": { "express": "^4.19.2" }\n'
            "}\n"
        ),
        "src/index.js": (
            "const express = require('express');\n"
            "\n"
            "const app = express();\n"
            "app.use(express.json());\n"
            "\n"
            "app.get('/health', (req, res) => res.json({ status: 'ok' }));\n"
            "\n"
            "const port = process.env.PORT || {{ port }};\n"
            "app.listen(port, () => console.log(`{{ project_name }} listening on ${port}`));\n"
        ),
        "README.md": "# {{ project_name }}\n\n{{ description }}\n\nRun with `npm start`.\n",
    },
    "react-component": {
        "{{ component_name }}.jsx": (
            "import './{{ component_name }}.css';\n"
            "\n"
            "export default function {{ component_name }}({ children }) {\n"
            "  return <div className=\"{{ css_class }}\">{children}</div>;\n"
            "}\n"
        ),
        "{{ component_name }}.css": ".{{ css_class }} {\n  display: block;\n}\n",
        "index.js": "export { default } from './{{ component_name }}';\n",
    },
    "static-site": {
        "index.html": (
            "<!DOCTYPE html>\n"
            "<html lang=\"en\">\n"
            "<head>\n"
            "  <meta charset=\"utf-8\">\n"
            "  <title>{{ project_name }}</title>\n"
            "  <link rel=\"stylesheet\" href=\"styles.css\">\n"
            "</head>\n"
            "<body>\n"
            "  <h1>{{ project_name }}</h1>\n"
            "  <p>{{ description }}</p>\n"
            "  <script src=\"script.js\"></script>\n"
            "</body>\n"
            "</html>\n"
        ),
        "styles.css": "body {\n  font-family: sans-serif;\n  margin: 2rem;\n}\n",
        "script.js": "console.log('{{ project_name }} loaded');\n",
    },
}

_IDENTIFIER_RE = re.compile(r"[^0-9a-zA-Z]+")


def _package_name(project_name: str) -> str:
    name = _IDENTIFIER_RE.sub("_", project_name).strip("_").lower()
    return name or "app"


def _component_name(project_name: str) -> str:
    parts = [p for p in _IDENTIFIER_RE.split(project_name) if p]
    return "".join(p[:1].upper() + p[1:] for p in parts) or "Component"


def default_variables(target_dir: str, variables: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    merged: Dict[str, str] = {str(k): str(v) for k, v in (variables or {}).items()}
    project_name = merged.get("project_name") or os.path.basename(os.path.normpath(target_dir)) or "project"
    merged.setdefault("project_name", project_name)
    merged.setdefault("target_dir", target_dir)
    merged.setdefault("package_name", _package_name(project_name))
    merged.setdefault("component_name", _component_name(project_name))
    merged.setdefault("css_class", _package_name(project_name).replace("_", "-"))
    merged.setdefault("description", f"{project_name} scaffold")
    merged.setdefault("version", "0.1.0")
    merged.setdefault("port", "3000")
    return merged


class ScaffoldGenerator:
    def __init__(self, scaffolds: Optional[Dict[str, Dict[str, str]]] = None) -> None:
        self._scaffolds = dict(scaffolds or SCAFFOLDS)
        self._env = Environment(
            loader=DictLoader({}),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def names(self) -> List[str]:
        return sorted(self._scaffolds)

    def generate(self, template_name: str, target_dir: str, variables: Dict[str, str]) -> List[str]:
        scaffold = self._scaffolds.get(template_name)
        if scaffold is None:
            raise NotFound(
                f"Unknown template '{template_name}'. Available: {', '.join(self.names())}."
            )
        context = default_variables(target_dir, variables)
        rendered: List[tuple[str, str]] = []
        try:
            for raw_path, body in scaffold.items():
                rel_path = self._env.from_string(raw_path).render(context).strip()
                # Resolve every path before writing anything.
                target = paths.resolve(target_dir, rel_path)
                rendered.append((target, self._env.from_string(body).render(context)))
        except TemplateError as exc:
            raise SandboxAgentError(f"Template '{template_name}' failed to render: {exc}") from exc
        written: List[str] = []
        for target, content in rendered:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "w", encoding="utf-8") as fh:
                fh.write(content)
            written.append(target)
        return written
