from django.urls import path
from . import views

urlpatterns = [
    path('health', views.HealthCheckView.as_view(), name='health'),
    path('telemetry/error', views.TelemetryErrorView.as_view(), name='telemetry-error'),
]
