from sqlalchemy import Column, DateTime, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ImageRequestRow(Base):
    __tablename__ = "image_requests"

    id = Column(String, primary_key=True)
    status = Column(String, index=True, nullable=False)
    image_name = Column(String, nullable=False)
    request_name = Column(String, nullable=False)
    base_image = Column(String, nullable=False)
    packages = Column(JSON, nullable=False, default=list)
    description = Column(Text, default="")
    justification = Column(Text, default="")
    requester_id = Column(String, index=True, default="")
    approver_id = Column(String, nullable=True)
    rejected_by = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    build_completed_at = Column(DateTime(timezone=True), nullable=True)
    assembly_id = Column(String, nullable=True)
    custom_name = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    existing_image = Column(String, nullable=True)
    chainctl_output = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    monitored_repo = Column(String, nullable=True)
    monitoring_started_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
