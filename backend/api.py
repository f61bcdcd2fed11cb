from contextlib import asynccontextmanager
from dataclasses import dataclass
import hmac
import json
import logging
from typing import Any, Dict, List, Optional, Union

import requests
import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from did_wallet import (
    AnchoringWorker,
    CredentialIssuer,
    CredentialVerifier,
    CurrentUser,
    DIDMethod,
    DIDService,
    IonClient,
    IonLedger,
    IssuerApplicationService,
    KeyManager,
    PresentationBuilder,
    Settings,
    SimulatedLedger,
    authenticate,
    sign_in,
    submit_operation,
)
from did_wallet.db import create_schema, init_engine, make_session_factory, session_scope
from did_wallet.errors import AuthenticationError, ValidationError, WalletError
from did_wallet.logger import get_logger
from did_wallet.models import Role

log = get_logger("did_wallet.api")


@dataclass
class Services:
    settings: Settings
    engine: Any
    Session: Any
    ion_client: IonClient
    did_service: DIDService
    worker: AnchoringWorker
    issuer: CredentialIssuer
    applications: IssuerApplicationService
    presentations: PresentationBuilder
    verifier: CredentialVerifier


def build_services(settings: Settings, ion_http: Optional[requests.Session] = None) -> Services:
    engine = init_engine(settings.database_url)
    Session = make_session_factory(engine)
    key_manager = KeyManager(settings.server_secret, kdf_iterations=settings.kdf_iterations)

    did_service = DIDService(
        Session,
        key_manager,
        method=DIDMethod(settings.did_method),
        return_private_key=settings.return_private_key,
        verification_ttl_days=settings.verification_ttl_days,
    )

    ion_client = IonClient(settings.ion_node_url, timeout=settings.ion_timeout_seconds, http=ion_http)
    ledger = IonLedger(ion_client) if settings.anchoring_ledger == "ion" else SimulatedLedger()
    worker = AnchoringWorker(
        Session,
        did_service.did_manager,
        ledger,
        ipfs_gateway=settings.ipfs_gateway,
        max_attempts=settings.anchor_max_attempts,
        backoff_seconds=settings.anchor_backoff_seconds,
    )

    return Services(
        settings=settings,
        engine=engine,
        Session=Session,
        ion_client=ion_client,
        did_service=did_service,
        worker=worker,
        issuer=CredentialIssuer(Session),
        applications=IssuerApplicationService(Session),
        presentations=PresentationBuilder(),
        verifier=CredentialVerifier(),
    )


# ============================================================
# REQUEST BODIES
# ============================================================

class SessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: str = Field(..., alias="userId")
    email: str
    full_name: Optional[str] = Field(None, alias="fullName")


class GenerateDIDRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    include_service: bool = Field(False, alias="includeService")
    service_endpoint: Optional[str] = Field(None, alias="serviceEndpoint")


class SubmitOperationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    operation_id: Optional[str] = Field(None, alias="operationId")


class IssuerApplicationRequest(BaseModel):
    full_name: str
    email: str
    website_url: Optional[str] = None
    dns_verification: bool = False
    email_verification: bool = True


class ReviewRequest(BaseModel):
    action: str


class RoleRequest(BaseModel):
    role: str


class IssueCredentialRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    recipient_email: str = Field(..., alias="recipientEmail")
    credential_subject: Dict[str, Any] = Field(default_factory=dict, alias="credentialSubject")
    credential_type: str = Field("EducationCredential", alias="credentialType")
    recipient_did: Optional[str] = Field(None, alias="recipientDID")
    validity_days: Optional[int] = Field(None, alias="validityDays")


class RevokeRequest(BaseModel):
    reason: str = ""


class PresentationRequest(BaseModel):
    selection: List[int] = Field(default_factory=list)


class VerifyPresentationRequest(BaseModel):
    presentation: Union[str, Dict[str, Any]]


# ============================================================
# APP
# ============================================================

def create_app(settings: Optional[Settings] = None, ion_http: Optional[requests.Session] = None) -> FastAPI:
    settings = settings or Settings()
    services = build_services(settings, ion_http=ion_http)
    logging.getLogger("did_wallet").setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Starting DID Wallet API...")
        create_schema(services.engine)
        # Resume anchoring jobs left behind by a previous process.
        resumed = await run_in_threadpool(services.worker.drain)
        log.info(f"Resumed {resumed} anchoring job(s), ledger: {settings.anchoring_ledger}")
        if not settings.identity_provider_key:
            log.warning("IDENTITY_PROVIDER_KEY is not set, sign-in is open")
        yield
        log.info("Shutting down...")
        services.engine.dispose()

    app = FastAPI(title="DID Wallet API", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WalletError)
    async def on_wallet_error(request: Request, exc: WalletError):
        return JSONResponse(exc.to_dict(), status_code=exc.status)

    def current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
        with session_scope(services.Session) as session:
            return authenticate(session, authorization)

    @app.post("/api/auth/session")
    def create_session(body: SessionRequest, x_identity_provider_key: Optional[str] = Header(None)):
        """
        Sign in a user authenticated by the identity provider

        Creates the profile on first sign-in and returns a fresh bearer token.
        """
        expected = settings.identity_provider_key
        if expected and not hmac.compare_digest(expected.encode(), (x_identity_provider_key or "").encode()):
            raise AuthenticationError("Unauthorized")
        return sign_in(
            services.Session,
            body.user_id,
            body.email,
            body.full_name,
            admin_emails=settings.admin_emails,
        )

    # ============================================================
    # DID ENDPOINTS
    # ============================================================

    @app.post("/functions/generate-did")
    def generate_did(
        body: GenerateDIDRequest,
        background_tasks: BackgroundTasks,
        user: CurrentUser = Depends(current_user),
    ):
        """
        Create the caller's DID and schedule its anchoring

        The answer carries status ``pending``; anchoring runs after the
        response is sent.
        """
        issued = services.did_service.issue_did(user, body.include_service, body.service_endpoint)
        background_tasks.add_task(services.worker.run, issued.job_id)
        return {"success": True, "data": issued.to_dict()}

    @app.post("/functions/submit-ion-operation")
    def submit_ion_operation(body: SubmitOperationRequest, user: CurrentUser = Depends(current_user)):
        """Forward a stored operation to the ION node"""
        try:
            with session_scope(services.Session) as session:
                result = submit_operation(session, body.operation_id, services.ion_client)
        except WalletError as e:
            return JSONResponse({"success": False, "error": e.message}, status_code=500)
        return {"success": True, "data": result}

    @app.get("/api/me")
    def me(user: CurrentUser = Depends(current_user)):
        return {"id": user.id, "email": user.email, "role": user.role}

    @app.get("/api/dids/me")
    def my_did(user: CurrentUser = Depends(current_user)):
        return {"did": services.did_service.get_user_did(user)}

    @app.delete("/api/dids/me")
    def delete_my_did(user: CurrentUser = Depends(current_user)):
        services.did_service.delete_failed_did(user)
        return {"success": True}

    @app.get("/api/dids/search")
    def search_dids(q: str = Query("", max_length=255), user: CurrentUser = Depends(current_user)):
        return {"results": services.did_service.search(q)}

    @app.get("/api/dids/{did_id}")
    def did_details(did_id: str, user: CurrentUser = Depends(current_user)):
        return services.did_service.get_did(did_id)

    @app.post("/api/dids/{did_id}/verify")
    def reverify(did_id: str, user: CurrentUser = Depends(current_user)):
        return services.did_service.reverify_did(user, did_id)

    @app.get("/api/resolve/{identifier:path}")
    def resolve(identifier: str):
        return services.did_service.resolve(identifier)

    @app.get("/api/statistics")
    def statistics(user: CurrentUser = Depends(current_user)):
        return services.did_service.user_statistics(user)

    @app.get("/api/network/statistics")
    def network_statistics():
        return services.did_service.network_statistics()

    @app.get("/api/info")
    def info():
        return {
            "available": True,
            "method": settings.did_method,
            "anchoring": settings.anchoring_ledger,
            "version": app.version,
        }

    # ============================================================
    # ISSUER APPLICATIONS & ADMIN
    # ============================================================

    @app.post("/api/issuer-applications")
    def submit_application(body: IssuerApplicationRequest, user: CurrentUser = Depends(current_user)):
        return services.applications.submit_application(
            user,
            full_name=body.full_name,
            email=body.email,
            website_url=body.website_url,
            dns_verification=body.dns_verification,
            email_verification=body.email_verification,
        )

    @app.get("/api/issuer-applications")
    def own_application(user: CurrentUser = Depends(current_user)):
        return {"application": services.applications.get_own_application(user)}

    @app.delete("/api/issuer-applications")
    def withdraw_application(user: CurrentUser = Depends(current_user)):
        services.applications.withdraw_application(user)
        return {"success": True}

    @app.get("/api/admin/applications")
    def list_applications(status: Optional[str] = None, user: CurrentUser = Depends(current_user)):
        return {"applications": services.applications.list_applications(user, status)}

    @app.post("/api/admin/applications/{application_id}/review")
    def review_application(application_id: str, body: ReviewRequest, user: CurrentUser = Depends(current_user)):
        return services.applications.review_application(user, application_id, body.action)

    @app.get("/api/admin/profiles")
    def list_profiles(user: CurrentUser = Depends(current_user)):
        return {"profiles": services.applications.list_profiles(user)}

    @app.put("/api/admin/profiles/{user_id}/role")
    def set_role(user_id: str, body: RoleRequest, user: CurrentUser = Depends(current_user)):
        return services.applications.set_role(user, user_id, body.role)

    @app.post("/api/admin/credentials/expire")
    def expire_credentials(user: CurrentUser = Depends(current_user)):
        user.require(Role.ADMIN)
        return {"expired": services.issuer.expire_credentials()}

    # ============================================================
    # CREDENTIALS & PRESENTATIONS
    # ============================================================

    @app.post("/api/credentials")
    def issue_credential(body: IssueCredentialRequest, user: CurrentUser = Depends(current_user)):
        return services.issuer.issue_credential(
            user,
            recipient_email=body.recipient_email,
            credential_subject=body.credential_subject,
            credential_type=body.credential_type,
            recipient_did=body.recipient_did,
            validity_days=body.validity_days,
        )

    @app.get("/api/credentials/issued")
    def issued_credentials(user: CurrentUser = Depends(current_user)):
        return {"credentials": services.issuer.list_issued(user)}

    @app.post("/api/credentials/{credential_id:path}/revoke")
    def revoke_credential(credential_id: str, body: RevokeRequest, user: CurrentUser = Depends(current_user)):
        return services.issuer.revoke_credential(user, credential_id, body.reason)

    @app.get("/api/credentials")
    def held_credentials(include_revoked: bool = False, user: CurrentUser = Depends(current_user)):
        return {"credentials": services.issuer.list_held(user, include_revoked=include_revoked)}

    @app.post("/api/presentations")
    def create_presentation(body: PresentationRequest, user: CurrentUser = Depends(current_user)):
        """Build a presentation from the caller's non-revoked credentials"""
        did = services.did_service.get_user_did(user)
        if did is None:
            raise ValidationError("Generate a DID before sharing credentials")
        held = services.issuer.list_held(user, include_revoked=False)
        presentation = services.presentations.build(
            did["did_identifier"],
            [record["credential_data"] for record in held],
            body.selection,
        )
        return {
            "presentation": presentation.to_dict(),
            "qrCode": presentation.qr_data_uri(),
        }

    @app.post("/api/presentations/verify")
    def verify_presentation(body: VerifyPresentationRequest):
        raw = body.presentation if isinstance(body.presentation, str) else json.dumps(body.presentation)
        return services.verifier.verify_presentation(raw).to_dict()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("backend.api:app", host="0.0.0.0", port=8000)
