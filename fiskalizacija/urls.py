# fiskalizacija/urls.py
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from fiskalizacija.views import FiscalInvoiceView, FiscalStornoView, FiscalSubmissionViewSet

router = DefaultRouter()
router.register(r"submissions", FiscalSubmissionViewSet, basename="fiscal-submission")

urlpatterns = [
    path("racuni/", FiscalInvoiceView.as_view(), name="fiskalizacija-racuni"),
    path("storno/", FiscalStornoView.as_view(), name="fiskalizacija-storno"),
    path("", include(router.urls)),
]
