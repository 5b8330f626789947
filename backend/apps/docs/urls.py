"""
URL configuration for the docs app.
"""
from django.urls import path
from . import views

app_name = 'docs'

urlpatterns = [
    path('upload', views.upload_documents, name='upload'),
    path('download', views.download_document, name='download'),
    path('', views.list_documents, name='list'),
    path('<str:document_id>/delete', views.delete_document, name='delete'),
]
