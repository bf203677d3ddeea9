# async HTTP client for UI collaborators talking to a survey node
from typing import Any, List, Optional

import httpx

from .errors import ERRORS_BY_CODE, StoreError, SurveyError
from .models import Survey, SurveyResults, Vote


class SurveyClient:
    """
    Thin wrapper over httpx.AsyncClient, one coroutine per node operation.

    Error responses are raised again as the matching SurveyError subclass,
    so callers handle DuplicateVoteError etc. the same way as in-process.
    Transport failures surface as StoreError.
    """

    def __init__(self, base_url: str, timeout: float = 2.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "SurveyClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {url} failed: {exc}") from exc

        if resp.is_error:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            # FastAPI's own request validation errors carry a list in "detail"
            code = body.get("error", "validation_error" if resp.status_code == 422 else "survey_error")
            detail = body.get("detail", resp.text)
            raise ERRORS_BY_CODE.get(code, SurveyError)(str(detail))
        return resp.json()

    # ----------- surveys -----------

    async def list_surveys(self) -> List[Survey]:
        return [Survey.model_validate(s) for s in await self._request("GET", "/surveys")]

    async def get_survey(self, survey_id: str) -> Survey:
        return Survey.model_validate(await self._request("GET", f"/surveys/{survey_id}"))

    async def create_survey(self, question: str, options: List[str]) -> Survey:
        body = {"question": question, "options": options}
        return Survey.model_validate(await self._request("POST", "/surveys", json=body))

    async def edit_survey(self, survey_id: str, question: str, options: List[str]) -> Survey:
        body = {"question": question, "options": options}
        return Survey.model_validate(await self._request("PUT", f"/surveys/{survey_id}", json=body))

    async def close_survey(self, survey_id: str) -> Survey:
        return Survey.model_validate(await self._request("POST", f"/surveys/{survey_id}/close"))

    async def reopen_survey(self, survey_id: str) -> Survey:
        return Survey.model_validate(await self._request("POST", f"/surveys/{survey_id}/reopen"))

    async def delete_survey(self, survey_id: str) -> int:
        return (await self._request("DELETE", f"/surveys/{survey_id}"))["votes_removed"]

    async def results(self, survey_id: str) -> SurveyResults:
        return SurveyResults.model_validate(await self._request("GET", f"/surveys/{survey_id}/results"))

    # ----------- votes -----------

    async def list_votes(self, survey_id: str, search: Optional[str] = None) -> List[Vote]:
        params = {"search": search} if search else None
        return [Vote.model_validate(v) for v in await self._request("GET", f"/surveys/{survey_id}/votes", params=params)]

    async def has_voted(self, survey_id: str, name: str, mobile: str) -> bool:
        params = {"name": name, "mobile": mobile}
        return (await self._request("GET", f"/surveys/{survey_id}/has-voted", params=params))["has_voted"]

    async def cast_vote(self, survey_id: str, name: str, mobile: str, option_id: str) -> Vote:
        body = {"name": name, "mobile": mobile, "option_id": option_id}
        return Vote.model_validate(await self._request("POST", f"/surveys/{survey_id}/votes", json=body))

    async def edit_vote(self, vote_id: str, name: str, mobile: str, option_id: str) -> Vote:
        body = {"name": name, "mobile": mobile, "option_id": option_id}
        return Vote.model_validate(await self._request("PUT", f"/votes/{vote_id}", json=body))

    async def delete_vote(self, vote_id: str) -> None:
        await self._request("DELETE", f"/votes/{vote_id}")
