"""
Read-only template store for the Vite + React game scaffold.

Templates come from an optional directory on disk (one file per relative
path) layered over the built-in constants below. The store never writes.
"""

import json
import logging
import os

logger = logging.getLogger(__name__)


# ── Template File Constants ──────────────────────────────────────────────────

PACKAGE_JSON = '''{
  "name": "game",
  "private": true,
  "version": "0.1.0",
  "type": "module",
  "scripts": {
    "dev": "vite",
    "build": "vite build",
    "start": "vite preview",
    "preview": "vite preview"
  },
  "dependencies": {
    "react": "^18.3.1",
    "react-dom": "^18.3.1",
    "@types/react": "^18.3.3",
    "@types/react-dom": "^18.3.0"
  },
  "devDependencies": {
    "@vitejs/plugin-react": "^4.3.1",
    "typescript": "^5.5.3",
    "vite": "^5.4.0"
  }
}'''

INDEX_HTML = '''<!doctype html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1.0" />
    <title>{GAME_NAME}</title>
  </head>
  <body>
    <div id="root"></div>
    <script type="module" src="/src/main.tsx"></script>
  </body>
</html>'''

VITE_CONFIG = '''import { defineConfig } from 'vite';
import react from '@vitejs/plugin-react';

export default defineConfig({
  plugins: [react()],
  server: {
    host: true,
  },
});'''

TSCONFIG_JSON = '''{
  "compilerOptions": {
    "target": "ES2020",
    "useDefineForClassFields": true,
    "lib": ["ES2020", "DOM", "DOM.Iterable"],
    "module": "ESNext",
    "skipLibCheck": true,
    "moduleResolution": "bundler",
    "allowImportingTsExtensions": true,
    "resolveJsonModule": true,
    "isolatedModules": true,
    "noEmit": true,
    "jsx": "react-jsx",
    "strict": false
  },
  "include": ["src"]
}'''

INDEX_CSS = '''*, *::before, *::after {
  box-sizing: border-box;
  margin: 0;
  padding: 0;
}

html, body, #root {
  width: 100%;
  height: 100%;
  background: #111;
  color: #eee;
  font-family: system-ui, sans-serif;
}'''

MAIN_TSX = '''import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App';
import './index.css';

ReactDOM.createRoot(document.getElementById('root')!).render(
  <React.StrictMode>
    <App />
  </React.StrictMode>
);'''

# Fallback when the chain never produced an App component
APP_TSX = '''import React from 'react';

function App() {
  return (
    <div style={{ display: 'flex', alignItems: 'center', justifyContent: 'center', height: '100%' }}>
      <h1>{GAME_NAME}</h1>
    </div>
  );
}

export default App;'''

GITIGNORE = '''node_modules
dist
build
out
*.log'''

README_MD = '''# {GAME_NAME}

Generated web game (engine: {GAME_ENGINE}).

```
npm install
npm run dev
```'''


BUILTIN_TEMPLATES = {
    "package.json": PACKAGE_JSON,
    "index.html": INDEX_HTML,
    "vite.config.ts": VITE_CONFIG,
    "tsconfig.json": TSCONFIG_JSON,
    "src/index.css": INDEX_CSS,
    "src/main.tsx": MAIN_TSX,
    "src/App.tsx": APP_TSX,
    ".gitignore": GITIGNORE,
    "README.md": README_MD,
}

# Written for every project before extracted files
SCAFFOLD_FILES = ["index.html", "vite.config.ts", "tsconfig.json", "src/index.css", ".gitignore", "README.md"]


class TemplateStore:
    """Lookup of template text by relative path."""

    def __init__(self, templates_dir: str | None = None):
        self.templates_dir = templates_dir or None
        if self.templates_dir and not os.path.isdir(self.templates_dir):
            logger.warning("[templates] Directory %s not found, using built-in templates", self.templates_dir)
            self.templates_dir = None

    def _read_override(self, name: str) -> str | None:
        if not self.templates_dir:
            return None
        path = os.path.join(self.templates_dir, name)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.warning("[templates] Failed to read %s: %s", path, e)
            return None

    def get(self, name: str, **variables) -> str | None:
        """Template text with {PLACEHOLDER} variables substituted, or None."""
        text = self._read_override(name)
        if text is None:
            text = BUILTIN_TEMPLATES.get(name)
        if text is None:
            return None
        for key, value in variables.items():
            text = text.replace("{" + key + "}", str(value))
        return text

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def base_manifest(self) -> dict | None:
        """The base package.json as a dict, or None when unreadable."""
        raw = self.get("package.json")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("[templates] Base package.json is not valid JSON: %s", e)
            return None

    def scaffold(self, **variables) -> dict:
        """{path: content} for every scaffold file available."""
        files = {}
        for name in SCAFFOLD_FILES:
            text = self.get(name, **variables)
            if text is not None:
                files[name] = text
        return files
