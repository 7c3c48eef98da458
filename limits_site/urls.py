from django.urls import include, path

urlpatterns = [
    path('api/', include('request_limits.urls')),
]
