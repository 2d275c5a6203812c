# core/urls.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from django.contrib import admin
from django.http import JsonResponse
from django.urls import include, path


def health(_request):
    return JsonResponse({"ok": True})


urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/health/", health),

    # =========================
    # APIs (Fiskalizacija CIS)
    # =========================
    path("api/fiskalizacija/", include("fiskalizacija.urls")),
]
