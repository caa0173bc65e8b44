import json

import pytest

from forge.chain import ChainStage, GenerationChain
from forge.config import Settings
from forge.orchestrator import ServerHandle, ServerState


APP_TSX = """import React from 'react';
import GameComponent from './components/GameComponent';

function App() {
  return (
    <div className="app">
      <GameComponent engine="phaser" />
    </div>
  );
}

export default App;"""

MAIN_TSX = """import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App';
import './index.css';

ReactDOM.createRoot(document.getElementById('root')!).render(<App />);"""

GAME_COMPONENT_TSX = """import React, { useEffect, useRef } from 'react';
import Phaser from 'phaser';

const GameComponent = () => {
  const ref = useRef<HTMLDivElement>(null);
  useEffect(() => {
    const game = new Phaser.Game({ type: Phaser.AUTO, parent: ref.current! });
    return () => game.destroy(true);
  }, []);
  return <div ref={ref} />;
};

export default GameComponent;"""

GENERATED_TEXT = f"""Here is your game!

// === src/App.tsx ===
```tsx
// Generated by the code stage
{APP_TSX}
```

// === src/main.tsx ===
```tsx
{MAIN_TSX}
```

// === src/components/GameComponent.tsx ===
```tsx
{GAME_COMPONENT_TSX}
```
"""


@pytest.fixture
def settings(tmp_path):
    return Settings(
        projects_root=str(tmp_path / "projects"),
        logs_dir=str(tmp_path / "logs"),
        nginx_projects_path=str(tmp_path / "nginx"),
        deploy_log_path=str(tmp_path / "deploy-log.txt"),
        templates_dir="",
        schema_path="",
        nginx_enabled=False,
    )


@pytest.fixture
def generated_text():
    return GENERATED_TEXT


class FakeOrchestrator:
    """Stands in for ProcessOrchestrator without spawning anything."""

    def __init__(self, error=None):
        self.error = error
        self.runs = []
        self.torn_down = []

    async def run(self, project_dir, project_id, mode="development", subdomain=None):
        self.runs.append((project_dir, project_id, mode, subdomain))
        if self.error is not None:
            raise self.error
        handle = ServerHandle(project_id=project_id, kind=mode, toolchain="vite")
        handle.transition(ServerState.STARTING)
        handle.port = 5173
        handle.url = "http://localhost:5173"
        handle.transition(ServerState.READY)
        return handle

    async def probe(self, handle):
        return {"ok": True, "status_code": 200, "error": None}

    async def teardown(self, handle):
        self.torn_down.append(handle)
        handle.transition(ServerState.STOPPED)


@pytest.fixture
def fake_orchestrator():
    return FakeOrchestrator()


def make_chain(final_text, calls=None):
    calls = calls if calls is not None else []

    async def architecture(stage_input):
        calls.append(("Architecture", stage_input))
        return "A side-scrolling shooter built with Phaser."

    async def code(stage_input):
        calls.append(("Code", stage_input))
        return final_text

    return GenerationChain([
        ChainStage("Architecture", architecture),
        ChainStage("Code", code),
    ])


@pytest.fixture
def fake_chain(generated_text):
    return make_chain(generated_text)


def parse_sse(raw):
    """Split a raw SSE body back into (event, payload) pairs."""
    events = []
    for block in raw.split("\n\n"):
        if not block.strip():
            continue
        name = "message"
        data_lines = []
        for line in block.split("\n"):
            if line.startswith("event:"):
                name = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:"):].strip())
        if data_lines:
            events.append((name, json.loads("\n".join(data_lines))))
    return events
