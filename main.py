from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from dataclasses import asdict

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.concurrency import run_in_threadpool

from fdp import db
from fdp.api_models import PushEvent, RollbackRequest
from fdp.gateway import NoHealthyTargets, select_target
from fdp.orchestrator import DeploymentConfig, DockerTaskLauncher, Orchestrator
from fdp.pipeline import LocalPlatform, Pipeline, PipelineConfig
from fdp.proxy import HOP_BY_HOP, METHODS
from fdp.reconciler import Reconciler
from fdp.registry import LocalRegistry
from fdp.runtime import RuntimeState
from fdp.settings import settings
from fdp.targets import HealthCheckConfig


security = HTTPBasic()


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username, settings.admin_user)
    pass_ok = secrets.compare_digest(credentials.password, settings.admin_password)
    if not (user_ok and pass_ok):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def create_app(
    orchestrator: Orchestrator,
    pipeline: Pipeline,
    reconciler: Reconciler | None = None,
    lb_client: httpx.Client | None = None,
) -> FastAPI:
    runtime = orchestrator.runtime
    http = lb_client or httpx.Client(follow_redirects=False)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        if reconciler is not None:
            reconciler.start()
        yield
        if reconciler is not None:
            reconciler.stop()

    app = FastAPI(title="Fargate Deploy Pipeline", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/hooks/push")
    def push_hook(event: PushEvent, background: BackgroundTasks, username: str = Depends(get_current_username)):
        run = pipeline.trigger(event)
        if run is None:
            return {"status": "ignored", "branch": event.branch}
        background.add_task(pipeline.execute, run.id)
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"run_id": run.id, "state": run.state})

    @app.get("/runs")
    def list_runs(limit: int = 50):
        return [asdict(r) for r in db.list_runs(limit)]

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        run = db.get_run(run_id)
        if not run:
            raise HTTPException(status_code=404, detail="unknown run")
        return {**asdict(run), "events": db.latest_events(limit=100, ref=run_id)}

    @app.get("/services")
    def list_services():
        return [orchestrator.describe_service(s.name) for s in db.list_services()]

    @app.get("/services/{name}/revisions")
    def list_revisions(name: str):
        svc = db.get_service(name)
        if not svc:
            raise HTTPException(status_code=404, detail="unknown service")
        return [
            {
                "name": r.name,
                "revision": r.revision,
                "images": r.image_list,
                "active": r.revision == svc.active_revision,
                "created_at": r.created_at,
            }
            for r in db.list_task_revisions(svc.family)
        ]

    @app.get("/services/{name}/deployments")
    def list_deployments(name: str):
        if not db.get_service(name):
            raise HTTPException(status_code=404, detail="unknown service")
        return [asdict(d) for d in db.list_deployments(name)]

    @app.post("/services/{name}/rollback")
    def rollback(
        name: str,
        req: RollbackRequest,
        background: BackgroundTasks,
        username: str = Depends(get_current_username),
    ):
        try:
            dep = orchestrator.update_service(name, req.revision)
        except KeyError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        db.log_event("INFO", f"Rollback to revision {req.revision} requested by {username}", service_name=name, ref=dep.id)
        background.add_task(orchestrator.run_deployment, dep.id)
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=asdict(dep))

    @app.get("/target-groups/{service}")
    def describe_target_group(service: str):
        if service not in runtime.target_groups:
            raise HTTPException(status_code=404, detail="unknown target group")
        tg = runtime.target_group(service)
        return {"name": tg.name, "health_check": asdict(tg.config), "targets": tg.describe()}

    @app.get("/events")
    def events(limit: int = 100):
        return db.latest_events(limit)

    def _forward(method: str, url: str, request: Request, body: bytes) -> Response:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP}
        try:
            resp = http.request(
                method,
                url,
                params=request.query_params.multi_items(),
                headers=headers,
                content=body,
                timeout=settings.proxy_read_timeout_s,
            )
        except httpx.TimeoutException:
            return Response("Gateway Timeout", status_code=504)
        except httpx.HTTPError:
            return Response("Bad Gateway", status_code=502)
        out_headers = {
            k: v for k, v in resp.headers.items() if k.lower() not in HOP_BY_HOP and k.lower() != "content-encoding"
        }
        return Response(content=resp.content, status_code=resp.status_code, headers=out_headers)

    @app.api_route("/lb/{service}/{path:path}", methods=METHODS)
    async def load_balancer(service: str, path: str, request: Request) -> Response:
        try:
            target = select_target(service, runtime)
        except NoHealthyTargets as e:
            return JSONResponse({"detail": str(e)}, status_code=503)
        body = await request.body()
        return await run_in_threadpool(_forward, request.method, f"{target.base_url}/{path}", request, body)

    return app


def default_app() -> FastAPI:
    runtime = RuntimeState(HealthCheckConfig.from_settings())
    registry = LocalRegistry()
    orchestrator = Orchestrator(
        runtime,
        DockerTaskLauncher(),
        registry,
        container_name=settings.container_name,
        config=DeploymentConfig.from_settings(),
    )
    pipeline = Pipeline(
        LocalPlatform(orchestrator, registry, desired_count=settings.desired_count),
        PipelineConfig.from_settings(),
    )
    reconciler = Reconciler(orchestrator) if settings.enable_reconciler else None
    return create_app(orchestrator, pipeline, reconciler)


app = default_app()
