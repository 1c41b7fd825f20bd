import pytest

from medbook.models.doctor import Doctor

# Test data
test_user_data = {
    "email": "test@example.com",
    "password": "TestPassword123",
    "role": "patient",
    "first_name": "Test",
    "last_name": "User"
}

test_login_data = {
    "email": "test@example.com",
    "password": "TestPassword123"
}

test_doctor_data = {
    "email": "doctor@example.com",
    "password": "TestPassword123",
    "role": "doctor",
    "first_name": "Gregory",
    "last_name": "House",
    "specialization": "Diagnostics",
    "consultation_fee": 150,
    "video_consultation_fee": 120
}

class TestAuthentication:
    
    def test_register_user(self, client):
        """Test user registration."""
        response = client.post("/api/v1/auth/register", json=test_user_data)
        assert response.status_code == 200
        
        data = response.json()
        assert data["email"] == test_user_data["email"]
        assert data["role"] == test_user_data["role"]
        assert data["doctor_id"] is None
        assert "password" not in data
        assert "password_hash" not in data
    
    def test_register_doctor_creates_profile(self, client, db):
        """Doctor registration creates an unverified doctor profile."""
        response = client.post("/api/v1/auth/register", json=test_doctor_data)
        assert response.status_code == 200

        doctor = db.get(Doctor, response.json()["doctor_id"])
        assert doctor.specialization == "Diagnostics"
        assert doctor.is_verified is False

    def test_register_doctor_requires_fee(self, client):
        """Doctors must give a specialization and fee."""
        incomplete = dict(test_doctor_data, consultation_fee=None)
        response = client.post("/api/v1/auth/register", json=incomplete)
        assert response.status_code == 400

    def test_register_admin_forbidden(self, client):
        """Admin accounts cannot be self-registered."""
        response = client.post("/api/v1/auth/register", json=dict(test_user_data, role="admin"))
        assert response.status_code == 403

    def test_register_duplicate_email(self, client):
        """Test registration with duplicate email."""
        client.post("/api/v1/auth/register", json=test_user_data)
        
        response = client.post("/api/v1/auth/register", json=test_user_data)
        assert response.status_code == 400
        assert "already registered" in response.json()["detail"]
    
    def test_register_invalid_password(self, client):
        """Test registration with invalid password."""
        invalid_data = test_user_data.copy()
        invalid_data["password"] = "weak"
        
        response = client.post("/api/v1/auth/register", json=invalid_data)
        assert response.status_code == 422

    def test_register_rate_limited(self, client):
        """Registration is limited per client address."""
        for i in range(10):
            client.post("/api/v1/auth/register", json=dict(test_user_data, email=f"user{i}@example.com"))

        response = client.post("/api/v1/auth/register", json=dict(test_user_data, email="late@example.com"))
        assert response.status_code == 429
    
    def test_login_success(self, client):
        """Test successful login."""
        client.post("/api/v1/auth/register", json=test_user_data)
        
        response = client.post("/api/v1/auth/login", json=test_login_data)
        assert response.status_code == 200
        
        data = response.json()
        assert "access_token" in data
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == test_user_data["email"]
    
    def test_login_invalid_credentials(self, client):
        """Test login with invalid credentials."""
        invalid_login = {
            "email": "nonexistent@example.com",
            "password": "wrongpassword"
        }
        
        response = client.post("/api/v1/auth/login", json=invalid_login)
        assert response.status_code == 401
    
    def test_login_wrong_password(self, client):
        """Test login with wrong password."""
        client.post("/api/v1/auth/register", json=test_user_data)
        
        wrong_login = test_login_data.copy()
        wrong_login["password"] = "wrongpassword"
        
        response = client.post("/api/v1/auth/login", json=wrong_login)
        assert response.status_code == 401
    
    def test_get_current_user(self, client):
        """Test getting current user info."""
        client.post("/api/v1/auth/register", json=test_user_data)
        login_response = client.post("/api/v1/auth/login", json=test_login_data)
        
        token = login_response.json()["access_token"]
        headers = {"Authorization": f"Bearer {token}"}
        
        response = client.get("/api/v1/auth/me", headers=headers)
        assert response.status_code == 200
        assert response.json()["email"] == test_user_data["email"]
    
    def test_get_current_user_invalid_token(self, client):
        """Test get current user with invalid token."""
        headers = {"Authorization": "Bearer invalid_token"}
        
        response = client.get("/api/v1/auth/me", headers=headers)
        assert response.status_code == 401

if __name__ == "__main__":
    pytest.main([__file__])
