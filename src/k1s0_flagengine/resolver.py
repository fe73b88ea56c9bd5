"""呼び出し元が渡したコンテキストを正規の Context に変換する"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable

from .context import Context, ContextSource, HasFlagContext, VersionResolver

PrincipalProvider = Callable[[], object | None]


class ContextResolver:
    """認証済みプリンシパルとバージョントレイトからコンテキストを解決する。

    Args:
        principal_provider: 現在のプリンシパル（ログインユーザーなど）を返す関数
        version_resolver: バージョントレイトを返すリゾルバー
        auto_resolve: False の場合、コンテキスト未指定時にプリンシパルを参照しない
    """

    def __init__(
        self,
        principal_provider: PrincipalProvider | None = None,
        version_resolver: VersionResolver | None = None,
        auto_resolve: bool = True,
    ) -> None:
        self._principal_provider = principal_provider
        self._version_resolver = version_resolver
        self._auto_resolve = auto_resolve

    def resolve(self) -> Context | None:
        """現在のプリンシパルからコンテキストを解決する。解決できなければ None。"""
        if not self._auto_resolve or self._principal_provider is None:
            return None
        principal = self._principal_provider()
        if not isinstance(principal, HasFlagContext):
            return None
        return self.from_provider(principal)

    def from_provider(self, provider: HasFlagContext) -> Context:
        traits = dict(provider.to_feature_flag_context())
        context_id = traits.pop("id", None)
        if context_id is None:
            get_auth_identifier = getattr(provider, "get_auth_identifier", None)
            context_id = get_auth_identifier() if callable(get_auth_identifier) else id(provider)
        return Context(context_id, self.merge_version_traits(traits))

    def merge_version_traits(self, traits: Mapping[str, Any]) -> dict[str, Any]:
        """バージョントレイトをマージする。既存トレイトが優先される。"""
        version_traits = self.resolve_version_traits()
        if not version_traits:
            return dict(traits)
        return {**version_traits, **traits}

    def resolve_version_traits(self) -> dict[str, str | None]:
        if self._version_resolver is None:
            return {}
        return dict(self._version_resolver.resolve())


class ContextNormalizer:
    """Context / HasFlagContext / 辞書 / None のいずれかを Context に正規化する。"""

    def __init__(self, resolver: ContextResolver) -> None:
        self._resolver = resolver

    def normalize(self, source: ContextSource) -> Context | None:
        if source is None:
            return self._resolver.resolve()
        if isinstance(source, Context):
            return self._enrich(source)
        if isinstance(source, HasFlagContext):
            return self._resolver.from_provider(source)
        if isinstance(source, Mapping):
            return self._from_mapping(source)
        return None

    def _enrich(self, context: Context) -> Context:
        version_traits = self._resolver.resolve_version_traits()
        if not version_traits:
            return context
        return Context(context.id, {**version_traits, **context.traits}, context.device_id)

    def _from_mapping(self, data: Mapping[str, Any]) -> Context | None:
        context_id = data.get("id")
        if context_id is None:
            return None
        raw_traits = data.get("traits")
        if isinstance(raw_traits, Mapping):
            traits = dict(raw_traits)
        else:
            traits = {k: v for k, v in data.items() if k != "id"}
        return Context(context_id, self._resolver.merge_version_traits(traits))
