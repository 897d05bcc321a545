from typing import Optional, Any
from aiohttp import ClientSession
from pydantic import BaseModel, ValidationError


class AuthorizationServerMetadata(BaseModel):
    """The subset of RFC 8414 metadata the OAuth client relies on."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: str


async def oauth_protected_resource(session: ClientSession, pds: str) -> Optional[Any]:
    async with session.get(f"{pds}/.well-known/oauth-protected-resource") as resp:
        if resp.status != 200:
            return None
        return await resp.json()


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[AuthorizationServerMetadata]:
    async with session.get(
        f"{authorization_server}/.well-known/oauth-authorization-server"
    ) as resp:
        if resp.status != 200:
            return None
        body = await resp.json()
    try:
        return AuthorizationServerMetadata.model_validate(body)
    except ValidationError:
        return None
