from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from core.config import ServiceInstance
from core.constants import QUEUE_PAGE_SIZE
from core.errors import ArrRequestError, FetchError, ManualImportError
from integrations.services import RequestManager

logger = logging.getLogger(__name__)

API_VERSIONS = {'sonarr': 'v3', 'radarr': 'v3', 'lidarr': 'v1', 'readarr': 'v1'}

# Fields a candidate must map to before it can be submitted, per service
_MEDIA_MAPPINGS = {
    'sonarr': ('series', 'episodes', 'seriesId', 'episodeIds'),
    'radarr': ('movie', None, 'movieId', None),
    'lidarr': ('artist', 'tracks', 'artistId', 'trackIds'),
    'readarr': ('author', None, 'authorId', None),
}


class ArrClient:
    """Thin async client for the queue and manual-import endpoints of one instance."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        instance: ServiceInstance,
        *,
        request_manager: Optional[RequestManager] = None,
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
    ) -> None:
        self.session = session
        self.instance = instance
        self.requests = request_manager or RequestManager()
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    @property
    def base_url(self) -> str:
        version = API_VERSIONS.get(self.instance.service_key, 'v3')
        url = self.instance.api_url.rstrip('/')
        if url.endswith(f'/api/{version}'):
            return url
        return f'{url}/api/{version}'

    async def _request(self, path: str, **kwargs):
        return await self.requests.throttled_request(
            self.session,
            self.instance.id,
            f'{self.base_url}/{path.lstrip("/")}',
            self.instance.api_key,
            request_timeout=self.request_timeout,
            retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff,
            **kwargs,
        )

    async def get_queue(self, page_size: int = QUEUE_PAGE_SIZE) -> List[Dict[str, Any]]:
        try:
            data = await self._request('queue', params={'pageSize': page_size})
        except ArrRequestError as e:
            raise FetchError(str(e)) from e
        if not isinstance(data, dict):
            raise FetchError('Queue response was not an object')
        records = data.get('records')
        return [r for r in records if isinstance(r, dict)] if isinstance(records, list) else []

    async def delete_queue_item(
        self,
        queue_id: int,
        *,
        remove_from_client: bool,
        blocklist: bool,
        skip_redownload: bool,
        change_category: bool,
    ) -> None:
        params = {
            'removeFromClient': _flag(remove_from_client),
            'blocklist': _flag(blocklist),
            'skipRedownload': _flag(skip_redownload),
            'changeCategory': _flag(change_category),
        }
        await self._request(f'queue/{queue_id}', params=params, method='delete')

    async def import_by_download_id(self, download_id: str) -> None:
        """Ask the service to import a finished download; raises ManualImportError on rejection."""
        try:
            payload = await self._request(
                'manualimport',
                params={'downloadId': download_id, 'filterExistingFiles': 'true'},
            )
        except ArrRequestError as e:
            raise ManualImportError(f'Failed to fetch manual import items: {e}', e.status) from e
        candidates = payload if isinstance(payload, list) else []
        if not candidates:
            raise ManualImportError('ARR did not provide any importable files for this download.')

        files, skipped = collect_import_files(self.instance.service_key, candidates, download_id)
        if not files:
            detail = '; '.join(skipped[:3])
            raise ManualImportError(
                f'No importable files were found: {detail}' if detail
                else 'ARR did not provide importable files for manual import.'
            )
        if skipped:
            logger.debug(f'Instance {self.instance.id}: manual import skipped {len(skipped)} file(s) for {download_id}: {skipped}')
        command = {'name': 'ManualImport', 'importMode': 'auto', 'files': files}
        try:
            await self._request('command', json_data=command, method='post')
        except ArrRequestError as e:
            raise ManualImportError(f'ARR manual import command failed: {e}', e.status) from e


def _flag(value: bool) -> str:
    return 'true' if value else 'false'


def _summarize_rejections(candidate: Dict[str, Any]) -> Optional[str]:
    reasons = []
    for rej in candidate.get('rejections') or []:
        if isinstance(rej, dict):
            reason = rej.get('reason') or rej.get('type')
        else:
            reason = rej
        if reason:
            reasons.append(str(reason))
    return ', '.join(reasons) if reasons else None


def collect_import_files(
    service: str, candidates: List[Dict[str, Any]], fallback_download_id: str
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Turn manual-import candidates into command files, skipping rejected or unmapped ones."""
    files: List[Dict[str, Any]] = []
    skipped: List[str] = []
    parent_key, child_key, parent_field, child_field = _MEDIA_MAPPINGS.get(service, _MEDIA_MAPPINGS['radarr'])
    for cand in candidates:
        if not isinstance(cand, dict):
            continue
        name = cand.get('relativePath') or cand.get('name') or cand.get('path') or 'unknown file'
        rejected = _summarize_rejections(cand)
        if rejected:
            skipped.append(f'{name}: {rejected}')
            continue
        parent = cand.get(parent_key) if isinstance(cand.get(parent_key), dict) else {}
        parent_id = parent.get('id')
        if not parent_id:
            skipped.append(f'{name}: missing {parent_key} mapping')
            continue
        entry: Dict[str, Any] = {
            'path': cand.get('path'),
            'folderName': cand.get('folderName') or '',
            'downloadId': cand.get('downloadId') or fallback_download_id,
            'quality': cand.get('quality'),
            'languages': cand.get('languages') or [],
            'releaseGroup': cand.get('releaseGroup'),
            'indexerFlags': cand.get('indexerFlags') if isinstance(cand.get('indexerFlags'), int) else 0,
            parent_field: parent_id,
        }
        if child_key:
            child_ids = [c.get('id') for c in cand.get(child_key) or [] if isinstance(c, dict) and c.get('id')]
            if not child_ids:
                skipped.append(f'{name}: missing {child_key} mapping')
                continue
            entry[child_field] = child_ids
        if service == 'lidarr' and isinstance(cand.get('album'), dict) and cand['album'].get('id'):
            entry['albumId'] = cand['album']['id']
        if service == 'readarr' and isinstance(cand.get('book'), dict) and cand['book'].get('id'):
            entry['bookId'] = cand['book']['id']
        if service == 'sonarr' and cand.get('releaseType'):
            entry['releaseType'] = cand.get('releaseType')
        files.append(entry)
    return files, skipped
