from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import FileEntryViewSet, PublicLinkView

router = DefaultRouter()
router.register(r'files', FileEntryViewSet, basename='fileentry')

urlpatterns = [
    path('', include(router.urls)),
    path('stats/', include('catalog.stats.urls')),
    path('public/<str:token>/', PublicLinkView.as_view(), name='public-link'),
]
