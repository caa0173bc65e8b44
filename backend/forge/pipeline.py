"""
Generation pipeline: one request from prompt to running project,
streamed as Server-Sent Events.

Steps:
  [0]     Initialization (input checks, session)
  [1..n]  Chain stages, strictly in order
  [n+1]   Extraction + dependency analysis + manifest
  [n+2]   Materialization
  [n+3]   Structural validation
  [n+4]   Launch (dev server, or build + proxy deploy)

Events: progress, step_complete, file_generated, warning, complete, error.
Every payload carries chatId and timestamp.
"""

import asyncio
import logging
import os
import time
import uuid
from typing import AsyncGenerator

from forge.chain import GenerationChain, StageInput, write_stage_log
from forge.config import Settings
from forge.dependency_analyzer import analyze_dependencies
from forge.deploy import sanitize_subdomain
from forge.errors import (
    DeploymentFailed,
    ExtractionIncomplete,
    DependencyUnresolved,
    InvalidSubdomainError,
    PortUnavailableError,
    ProcessSpawnFailed,
    ValidationFailed,
)
from forge.extractor import SOURCE_FALLBACK, SOURCE_LLM, extract_files
from forge.manifest import build_manifest, slugify_project_name
from forge.orchestrator import MODE_DEVELOPMENT, MODE_NGINX, ProcessOrchestrator
from forge.project_assembler import materialize_project_async
from forge.project_validator import detect_engine, format_validation_report, validate_project
from forge.sessions import STATUS_COMPLETE, STATUS_ERROR, SessionStore
from forge.sse_utils import sse_event
from forge.templates import TemplateStore

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW = 4000
ENGINE_ENTRY = "src/App.tsx"


def deployment_mode(settings: Settings, subdomain: str | None) -> str:
    return MODE_NGINX if settings.nginx_enabled and subdomain else MODE_DEVELOPMENT


async def run_generation_streaming(
    prompt: str,
    subdomain: str | None = None,
    *,
    store: SessionStore,
    chain: GenerationChain,
    orchestrator: ProcessOrchestrator,
    templates: TemplateStore,
    settings: Settings,
) -> AsyncGenerator[str, None]:
    prompt = (prompt or "").strip()
    session = store.open(prompt, subdomain)
    chat_id = session.chat_id
    total_steps = len(chain) + 5
    session.total_steps = total_steps
    start = time.time()

    def _log(msg):
        logger.info("[chat %d] [%.1fs] %s", chat_id, time.time() - start, msg)

    def emit(event: str, **data) -> str:
        return sse_event(event, {"chatId": chat_id, **data})

    def fail(message: str, details: dict | None = None) -> str:
        _log(f"FAILED: {message}")
        store.close(chat_id, STATUS_ERROR, message)
        return emit("error", error=message, details=details or {})

    def progress(step: int, name: str, message: str) -> str:
        session.step = step
        return emit("progress", step=step, totalSteps=total_steps, stepName=name, message=message)

    try:
        # ============================================================
        # [0] INITIALIZATION
        # ============================================================
        yield progress(0, "Initialization", "Starting generation...")

        if not prompt:
            yield fail("Prompt is required")
            return

        clean_subdomain = None
        if subdomain:
            try:
                clean_subdomain = sanitize_subdomain(subdomain, settings.max_subdomain_length)
            except InvalidSubdomainError as e:
                yield fail(e.message, e.details)
                return

        mode = deployment_mode(settings, clean_subdomain)
        project_id = clean_subdomain or uuid.uuid4().hex[:12]
        session.project_id = project_id
        _log(f"=== GENERATION START: project={project_id} mode={mode} ===")
        yield emit("step_complete", step=0, totalSteps=total_steps, stepName="Initialization",
                   output=f"Project {project_id} ({mode})")

        # ============================================================
        # [1..n] CHAIN STAGES
        # ============================================================
        outputs: dict[str, str] = {}
        previous = ""
        for step, stage in enumerate(chain, start=1):
            yield progress(step, stage.name, f"Running {stage.name}...")
            stage_input = StageInput(prompt=prompt, previous=previous or prompt, outputs=dict(outputs))
            try:
                output = await stage.run(stage_input)
            except Exception as e:
                logger.exception("[chat %d] Stage %s raised", chat_id, stage.name)
                yield fail(f"{stage.name} failed: {e}", {"step": step, "stepName": stage.name})
                return

            output = output or ""
            outputs[stage.name] = output
            previous = output
            store.record_stage(chat_id, stage.name, output)
            write_stage_log(settings.logs_dir, chat_id, step, stage.name, stage_input, output)
            _log(f"{stage.name}: {len(output)} chars")
            yield emit("step_complete", step=step, totalSteps=total_steps, stepName=stage.name,
                       output=output[:OUTPUT_PREVIEW], outputLength=len(output))

        final_text = previous

        # ============================================================
        # [n+1] EXTRACTION
        # ============================================================
        step = len(chain) + 1
        yield progress(step, "Extraction", "Extracting files from generated output...")

        extraction = extract_files(final_text)
        if extraction.missing:
            notice = ExtractionIncomplete(extraction.missing)
            yield emit("warning", message=notice.message, details=notice.details)

        deps = analyze_dependencies(extraction.files)
        if deps.unresolved:
            notice = DependencyUnresolved(sorted(deps.unresolved))
            yield emit("warning", message=notice.message, details=notice.details)

        entry = extraction.get(ENGINE_ENTRY)
        engine = detect_engine(entry.content if entry else final_text)
        manifest = build_manifest(slugify_project_name(prompt), engine, deps, templates.base_manifest())
        _log(f"Extracted {len(extraction.files)} files, engine={engine}")
        yield emit("step_complete", step=step, totalSteps=total_steps, stepName="Extraction",
                   output=f"{len(extraction.files)} files extracted",
                   missing=extraction.missing, engine=engine, dependencies=deps.as_dict())

        # ============================================================
        # [n+2] MATERIALIZATION
        # ============================================================
        step += 1
        yield progress(step, "Materialization", "Writing project files...")

        # A reused project id must not leave the old server running
        await store.release_project(project_id)
        project_dir = os.path.join(settings.projects_root, project_id)
        session.project_dir = project_dir

        result = await materialize_project_async(
            project_dir, extraction.files, extraction.missing, manifest, templates,
        )
        for f in result.files:
            yield emit("file_generated", step=step, fileName=f.name, fileType=f.type,
                       source=f.source, size=len(f.content), content=f.content)
        for name, reason in result.failed.items():
            yield emit("warning", message=f"Could not write {name}: {reason}", details={"file": name})

        _log(f"Materialized {len(result.written)} files in {project_dir}")
        yield emit("step_complete", step=step, totalSteps=total_steps, stepName="Materialization",
                   output=f"{len(result.written)} files written", projectPath=project_dir,
                   fallbacks=result.fallbacks)

        # ============================================================
        # [n+3] VALIDATION
        # ============================================================
        step += 1
        yield progress(step, "Validation", "Validating project structure...")

        report = await asyncio.to_thread(validate_project, project_dir, None, settings.schema_path or None)
        _log(format_validation_report(report))
        if not report.valid:
            notice = ValidationFailed("Structural validation failed", {"errors": list(report.errors)})
            yield emit("warning", message=notice.message, details=notice.details)
        for message in report.warnings:
            yield emit("warning", message=message, details={"stepName": "Validation"})
        yield emit("step_complete", step=step, totalSteps=total_steps, stepName="Validation",
                   output="PASSED" if report.valid else "FAILED", validation=report.summary())

        # ============================================================
        # [n+4] LAUNCH
        # ============================================================
        step += 1
        launch_message = "Building and deploying..." if mode == MODE_NGINX else "Installing and starting dev server..."
        yield progress(step, "Launch", launch_message)

        try:
            handle = await orchestrator.run(project_dir, project_id, mode, clean_subdomain)
        except (PortUnavailableError, ProcessSpawnFailed, DeploymentFailed, InvalidSubdomainError) as e:
            yield fail(e.message, {"stepName": "Launch", "projectId": project_id, **e.details})
            return

        await store.attach_server(project_id, handle)
        reachable = await orchestrator.probe(handle)
        _log(f"Launched at {handle.url}")
        yield emit("step_complete", step=step, totalSteps=total_steps, stepName="Launch",
                   output=handle.url, server=handle.to_dict())

        # ============================================================
        # DONE
        # ============================================================
        llm_files = [f.name for f in result.files if f.source == SOURCE_LLM]
        fallback_files = [f.name for f in result.files if f.source == SOURCE_FALLBACK]
        store.close(chat_id, STATUS_COMPLETE)
        _log("=== GENERATION COMPLETE ===")
        yield emit(
            "complete",
            projectId=project_id,
            projectName=manifest.name,
            engine=engine,
            totalFiles=len(result.files),
            aiGeneratedFiles=len(llm_files),
            missingFilesGenerated=len(fallback_files),
            files=[f.name for f in result.files],
            dependencies=manifest.to_dict()["dependencies"],
            setupInstructions={
                "url": handle.url,
                "port": handle.port,
                "projectPath": project_dir,
                "deploymentType": handle.kind,
                "caveat": handle.caveat,
            },
            reachable=reachable,
            validation=report.summary(),
        )
    except Exception as e:
        logger.exception("[chat %d] Generation failed at step %d", chat_id, session.step)
        yield fail(f"Generation failed: {e}", {"step": session.step, "type": type(e).__name__})
    finally:
        if session.closed_at is None:
            store.close(chat_id, STATUS_ERROR, "Stream closed before completion")
