from sqlalchemy import Column, String, Boolean, TIMESTAMP, Text, create_engine, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import json
import logging
import secrets

from entitlements import ENTITLEMENT_FIELDS, EntitlementKey, is_valid_user_id
from errors import AlreadyInState, InvalidKey, NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

# Declare base for using SQLAlchemy
Base = declarative_base()


def new_object_id():
    """24 hex chars, the identity format embedded in console callbacks."""
    return secrets.token_hex(12)


# User model
class User(Base):
    __tablename__ = 'users'

    id = Column(String(24), primary_key=True, default=new_object_id)
    name = Column(String, nullable=False)
    phone = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)

    # VIP entitlements, one flag per (domain, part)
    is_informatique_hardware = Column(Boolean, default=False, nullable=False)
    is_informatique_software = Column(Boolean, default=False, nullable=False)
    is_bureautique_hardware = Column(Boolean, default=False, nullable=False)
    is_bureautique_software = Column(Boolean, default=False, nullable=False)
    is_marketing_social = Column(Boolean, default=False, nullable=False)
    is_marketing_content = Column(Boolean, default=False, nullable=False)
    is_gsm_hardware = Column(Boolean, default=False, nullable=False)
    is_gsm_software = Column(Boolean, default=False, nullable=False)

    # Password reset, always set or cleared together
    otp = Column(String)
    otp_expires_at = Column(TIMESTAMP)

    created_at = Column(TIMESTAMP, default=datetime.utcnow)


# Video model
class Video(Base):
    __tablename__ = 'videos'

    id = Column(String(24), primary_key=True, default=new_object_id)
    title = Column(String, nullable=False)
    category_id = Column(String, index=True, nullable=False)
    part = Column(String, index=True)
    is_paid = Column(Boolean, default=False, nullable=False)
    description = Column(Text, default='')
    video_file_id = Column(String, nullable=False)
    image_file_id = Column(String, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, index=True)


# Setting model
class Setting(Base):
    __tablename__ = 'settings'

    key = Column(String, primary_key=True)
    value = Column(Text)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)


class Database:
    def __init__(self, db_url):
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        self.engine = create_engine(db_url, connect_args=connect_args)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    # User methods
    def create_user(self, name, phone, password_hash):
        session = self.Session()
        try:
            new_user = User(name=name, phone=phone, password_hash=password_hash)
            session.add(new_user)
            session.commit()
            return new_user
        except IntegrityError:
            session.rollback()
            raise ValidationError("Utilisateur déjà existant")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error creating user: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def get_user_by_id(self, user_id):
        if not is_valid_user_id(user_id):
            raise ValidationError(f"Invalid user id: {user_id!r}")
        session = self.Session()
        try:
            user = session.get(User, user_id.lower())
        except SQLAlchemyError as e:
            logger.error(f"Error getting user {user_id}: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_user_by_phone(self, phone):
        session = self.Session()
        try:
            return session.query(User).filter_by(phone=phone).first()
        except SQLAlchemyError as e:
            logger.error(f"Error getting user by phone: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def list_users(self):
        session = self.Session()
        try:
            return session.query(User).order_by(User.created_at.desc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Error listing users: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def count_users(self):
        session = self.Session()
        try:
            return session.query(func.count(User.id)).scalar()
        finally:
            session.close()

    # Entitlement methods
    def set_entitlement(self, user_id, key: EntitlementKey, value: bool, only_if_changed=True):
        """Set one entitlement flag with a single-row UPDATE.

        With ``only_if_changed`` the write is conditional on the flag
        differing from ``value``; when it already matches AlreadyInState is
        raised, so two racing approvals produce a single transition.
        """
        if key not in ENTITLEMENT_FIELDS:
            raise InvalidKey(f"Unknown entitlement: {key.label}")
        if not is_valid_user_id(user_id):
            raise ValidationError(f"Invalid user id: {user_id!r}")
        column = getattr(User, ENTITLEMENT_FIELDS[key])
        user_id = user_id.lower()

        session = self.Session()
        try:
            stmt = update(User).where(User.id == user_id)
            if only_if_changed:
                stmt = stmt.where(column != value)
            result = session.execute(stmt.values({column: value}))
            session.commit()
            user = session.get(User, user_id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error updating entitlement {key.label} for {user_id}: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if result.rowcount == 0:
            raise AlreadyInState(f"{key.label} already {'granted' if value else 'revoked'}")
        return user

    # OTP methods
    def set_otp(self, user_id, otp, expires_at):
        session = self.Session()
        try:
            session.execute(
                update(User).where(User.id == user_id).values(otp=otp, otp_expires_at=expires_at)
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error setting OTP: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def find_user_by_valid_otp(self, phone, otp, now=None):
        now = now or datetime.utcnow()
        session = self.Session()
        try:
            return session.query(User).filter(
                User.phone == phone,
                User.otp == otp,
                User.otp_expires_at > now
            ).first()
        except SQLAlchemyError as e:
            logger.error(f"Error checking OTP: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def update_password(self, user_id, password_hash):
        """Store a new password hash and consume the pending OTP."""
        session = self.Session()
        try:
            session.execute(
                update(User).where(User.id == user_id).values(
                    password_hash=password_hash, otp=None, otp_expires_at=None
                )
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error updating password: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def clear_expired_otps(self, now=None):
        now = now or datetime.utcnow()
        session = self.Session()
        try:
            result = session.execute(
                update(User).where(User.otp_expires_at <= now).values(otp=None, otp_expires_at=None)
            )
            session.commit()
            return result.rowcount
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(str(e)) from e
        finally:
            session.close()

    # Video methods
    def create_video(self, title, category_id, part, is_paid, description, video_file_id, image_file_id):
        session = self.Session()
        try:
            video = Video(
                title=title,
                category_id=category_id,
                part=part,
                is_paid=is_paid,
                description=description or '',
                video_file_id=video_file_id,
                image_file_id=image_file_id
            )
            session.add(video)
            session.commit()
            return video
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error creating video: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def get_video(self, video_id):
        session = self.Session()
        try:
            video = session.get(Video, video_id)
        finally:
            session.close()
        if video is None:
            raise NotFoundError(f"Video {video_id} not found")
        return video

    def get_video_by_file(self, video_file_id):
        session = self.Session()
        try:
            return session.query(Video).filter_by(video_file_id=video_file_id).first()
        finally:
            session.close()

    def list_videos(self, category=None, part=None, page=1, limit=20):
        session = self.Session()
        try:
            query = session.query(Video)
            if category:
                query = query.filter(Video.category_id == category)
            if part:
                query = query.filter(Video.part == part)
            return query.order_by(Video.created_at.desc()) \
                .offset((page - 1) * limit) \
                .limit(limit) \
                .all()
        except SQLAlchemyError as e:
            logger.error(f"Error listing videos: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def update_video(self, video_id, **fields):
        session = self.Session()
        try:
            video = session.get(Video, video_id)
            if video is None:
                raise NotFoundError(f"Video {video_id} not found")
            for name, value in fields.items():
                setattr(video, name, value)
            session.commit()
            return video
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error updating video: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def delete_video(self, video_id):
        session = self.Session()
        try:
            video = session.get(Video, video_id)
            if video is None:
                raise NotFoundError(f"Video {video_id} not found")
            session.delete(video)
            session.commit()
            return video
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error deleting video: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    def count_videos(self):
        session = self.Session()
        try:
            return session.query(func.count(Video.id)).scalar()
        finally:
            session.close()

    # Setting methods
    def get_setting(self, key, default=None):
        session = self.Session()
        try:
            setting = session.get(Setting, key)
            return json.loads(setting.value) if setting else default
        finally:
            session.close()

    def set_setting(self, key, value):
        session = self.Session()
        try:
            setting = session.get(Setting, key)
            if setting is None:
                setting = Setting(key=key)
                session.add(setting)
            setting.value = json.dumps(value)
            session.commit()
            return value
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error saving setting {key}: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()
