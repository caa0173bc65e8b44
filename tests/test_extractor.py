import pytest

from forge.extractor import (
    CommentMarkerStrategy,
    DelimiterBlockStrategy,
    FileTarget,
    SOURCE_LLM,
    ensure_imports,
    extract_file,
    extract_files,
    file_type,
    sanitize_content,
)

APP = """import React from 'react';
import GameComponent from './components/GameComponent';

function App() {
  return <GameComponent />;
}

export default App;"""

MAIN = """import React from 'react';
import ReactDOM from 'react-dom/client';
import App from './App';

ReactDOM.createRoot(document.getElementById('root')!).render(<App />);"""

APP_UNLABELLED = """import React, { useState } from 'react';

function App() {
  const [score, setScore] = useState(0);
  return (
    <div className="game">
      <h1>Score: {score}</h1>
      <button onClick={() => setScore(score + 1)}>Click to score points</button>
    </div>
  );
}

export default App;"""


# ---------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------

def test_delimiter_blocks_split_files():
    text = f"=== src/App.tsx ===\n{APP}\n=== src/main.tsx ===\n{MAIN}\n"
    result = extract_files(text)

    assert result.get("src/App.tsx").content == APP
    assert result.get("src/main.tsx").content == MAIN
    assert result.missing == []
    assert all(f.source == SOURCE_LLM for f in result.files)


def test_noise_is_stripped_from_delimited_blocks():
    text = (
        "Here is the code:\n"
        "// === src/App.tsx ===\n"
        "```tsx\n"
        "// Generated by GameForge\n"
        f"{APP}\n"
        "```\n\n\n\n"
        "// === src/main.tsx ===\n"
        "```tsx\n"
        "// Chat ID: 42\n"
        f"{MAIN}\n"
        "```\n"
    )
    result = extract_files(text)

    app = result.get("src/App.tsx").content
    assert app == APP
    assert "```" not in app
    assert "Generated by" not in app
    assert "Chat ID" not in result.get("src/main.tsx").content


def test_comment_marker_blocks():
    text = f"// src/App.tsx\n{APP}\n\n// src/main.tsx\n{MAIN}\n"
    result = extract_files(text)

    assert result.get("src/App.tsx").content == APP
    assert result.get("src/main.tsx").content == MAIN


def test_fenced_block_under_heading():
    text = f"### src/App.tsx\n\n```tsx\n{APP}\n```\n"
    assert extract_file(text, FileTarget(name="src/App.tsx")) == APP


def test_fenced_block_with_path_on_fence_line():
    text = f"```tsx src/main.tsx\n{MAIN}\n```\n"
    assert extract_file(text, FileTarget(name="src/main.tsx")) == MAIN


def test_structural_fallback_finds_unlabelled_component():
    text = f"Sure! Here's your game:\n\n{APP_UNLABELLED}\n\nEnjoy!"
    result = extract_files(text)

    assert result.get("src/App.tsx").content == APP_UNLABELLED
    assert "src/main.tsx" in result.missing


def test_missing_required_file_is_reported_not_invented():
    result = extract_files("Sorry, I could not write the game.")

    assert result.files == []
    assert result.missing == ["src/App.tsx", "src/main.tsx"]


def test_first_occurrence_wins():
    second = APP.replace("GameComponent />", "OtherComponent />")
    text = f"=== src/App.tsx ===\n{APP}\n=== src/App.tsx ===\n{second}\n"
    assert extract_file(text, FileTarget(name="src/App.tsx")) == APP


def test_more_specific_strategy_wins_over_document_order():
    other = APP.replace("GameComponent />", "OtherComponent />")
    text = f"// src/App.tsx\n{other}\n\n=== src/App.tsx ===\n{APP}\n"
    target = FileTarget(name="src/App.tsx", strategies=[CommentMarkerStrategy(), DelimiterBlockStrategy()])
    assert extract_file(text, target) == APP


def test_duplicate_targets_do_not_overwrite():
    text = f"=== src/App.tsx ===\n{APP}\n"
    target = FileTarget(name="src/App.tsx", required=True)
    result = extract_files(text, [target, target])
    assert [f.name for f in result.files] == ["src/App.tsx"]


def test_sanity_check_rejects_malformed_json():
    text = "=== data/level.json ===\n{\"tiles\": [1, 2,\n"
    assert extract_file(text, FileTarget(name="data/level.json", min_length=5)) is None


def test_sanity_check_accepts_valid_json():
    text = "=== data/level.json ===\n{\"tiles\": [1, 2, 3]}\n"
    assert extract_file(text, FileTarget(name="data/level.json", min_length=5)) == '{"tiles": [1, 2, 3]}'


def test_required_imports_are_prepended():
    body = """const GameComponent = () => {
  const ref = useRef(null);
  return <div ref={ref} />;
};

export default GameComponent;"""
    text = f"=== src/components/GameComponent.tsx ===\n{body}\n"
    result = extract_files(text)
    content = result.get("src/components/GameComponent.tsx").content

    assert content.startswith("import React, { useEffect, useRef, useState } from 'react';\n")
    assert content.endswith(body)


# ---------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------

@pytest.mark.parametrize("raw", [
    "```tsx\nconst a = 1;\n```",
    "// Generated by X\n\n\n\n\nconst a = 1;\n---\n",
    "<!-- Generated by X -->\n<div></div>\n\n\n",
    "/* Generated by X */\nbody { color: red; }   \n",
    "// === src/App.tsx ===\nexport default App;",
    "",
])
def test_sanitize_is_idempotent(raw):
    once = sanitize_content(raw)
    assert sanitize_content(once) == once


def test_sanitize_collapses_blank_runs_and_trims():
    assert sanitize_content("\n\na\n\n\n\nb\n\n") == "a\n\nb"


def test_sanitize_keeps_ordinary_comments():
    code = "// === Game loop ===\nconst a = 1;"
    assert sanitize_content(code) == code


def test_ensure_imports_goes_after_directives_and_is_idempotent():
    content = "'use client';\nconst x = 1;"
    required = [("react", "import React from 'react';")]

    once = ensure_imports(content, required)
    assert once == "'use client';\nimport React from 'react';\nconst x = 1;"
    assert ensure_imports(once, required) == once


def test_ensure_imports_recognises_named_imports():
    content = "import { useState } from 'react';\nconst x = 1;"
    assert ensure_imports(content, [("react", "import React from 'react';")]) == content


def test_file_type_tags():
    assert file_type("src/App.tsx") == "tsx"
    assert file_type("vite.config.ts") == "typescript"
    assert file_type("src/index.css") == "css"
    assert file_type("package.json") == "json"
    assert file_type("README") == "text"
